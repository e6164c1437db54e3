"""
In-memory evaluation of Mongo-style queries over plain dict documents.

Only the subset of operators the registry actually issues is supported:

* Filters: equality on dotted paths, list membership, ``$ne``, ``$gt``,
  ``$gte``, ``$lt``, ``$lte``, ``$in``.
* Projections: inclusion (``{"id": 1}``) or exclusion (``{"manifest": 0}``) maps.
* Sorts: a list of ``(path, direction)`` pairs, direction 1 or -1.
* Pipelines: ``$match``, ``$unwind``, ``$group`` with ``$sum``, ``$sort``, ``$limit``.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

_MISSING = object()

SortSpec = Sequence[Tuple[str, int]]


def get_path(document: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Resolve a dotted path such as ``runtime.type`` inside a document.

    A path that crosses a list of sub-documents (``dependencies.packageId``)
    yields the list of values found in its elements.
    """
    value: Any = document
    parts = path.split(".")
    for i, part in enumerate(parts):
        if isinstance(value, list):
            rest = ".".join(parts[i:])
            found = [get_path(item, rest, _MISSING) for item in value if isinstance(item, dict)]
            found = [v for v in found if v is not _MISSING]
            return found if found else default
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "$ne":
        return actual != expected
    if op == "$in":
        return actual in expected
    if actual is None:
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {op}")


def _match_value(actual: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        return all(_compare(op, actual, expected) for op, expected in condition.items())
    if isinstance(actual, list) and not isinstance(condition, list):
        return condition in actual
    return actual == condition


def matches(document: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """
    Return True if the document satisfies every clause of the filter.
    """
    if not filter:
        return True
    for path, condition in filter.items():
        actual = get_path(document, path)
        if not _match_value(actual, condition):
            return False
    return True


def apply_projection(document: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    """
    Return a deep copy of the document restricted by the projection.

    Projections are top-level only; mixing inclusion and exclusion is rejected.
    """
    doc = copy.deepcopy(document)
    if not projection:
        return doc

    modes = {bool(v) for v in projection.values()}
    if len(modes) > 1:
        raise ValueError("Projection cannot mix inclusion and exclusion")

    if modes == {True}:
        return {k: v for k, v in doc.items() if k in projection}
    return {k: v for k, v in doc.items() if k not in projection}


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts before any real value in ascending order.
    if value is None:
        return (0, 0)
    return (1, value)


def sort_documents(documents: List[Dict[str, Any]], sort: Optional[SortSpec]) -> List[Dict[str, Any]]:
    """
    Stable multi-key sort. Later keys are applied first so the first key wins.
    """
    result = list(documents)
    for path, direction in reversed(list(sort or [])):
        result.sort(key=lambda d: _sort_key(get_path(d, path)), reverse=direction < 0)
    return result


def _unwind(documents: Iterable[Dict[str, Any]], field: str) -> List[Dict[str, Any]]:
    path = field[1:] if field.startswith("$") else field
    out: List[Dict[str, Any]] = []
    for doc in documents:
        values = get_path(doc, path)
        if not isinstance(values, list):
            continue
        for value in values:
            item = copy.deepcopy(doc)
            target = item
            parts = path.split(".")
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = value
            out.append(item)
    return out


def _resolve(document: Dict[str, Any], expr: Any) -> Any:
    if isinstance(expr, str) and expr.startswith("$"):
        return get_path(document, expr[1:])
    return expr


def _group(documents: Iterable[Dict[str, Any]], spec: Dict[str, Any]) -> List[Dict[str, Any]]:
    key_expr = spec.get("_id")
    groups: Dict[Any, Dict[str, Any]] = {}
    for doc in documents:
        key = _resolve(doc, key_expr)
        if isinstance(key, (list, dict)):
            raise ValueError("Group keys must be scalar values")
        bucket = groups.setdefault(key, {"_id": key})
        for out_field, accumulator in spec.items():
            if out_field == "_id":
                continue
            if not isinstance(accumulator, dict) or set(accumulator) != {"$sum"}:
                raise ValueError(f"Unsupported accumulator for {out_field}")
            value = _resolve(doc, accumulator["$sum"])
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                value = 0
            bucket[out_field] = bucket.get(out_field, 0) + value
    for bucket in groups.values():
        for out_field in spec:
            if out_field != "_id":
                bucket.setdefault(out_field, 0)
    return list(groups.values())


def run_pipeline(documents: Iterable[Dict[str, Any]], pipeline: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Evaluate an aggregation pipeline over the given documents.
    """
    current: List[Dict[str, Any]] = [copy.deepcopy(d) for d in documents]
    for stage in pipeline:
        if len(stage) != 1:
            raise ValueError("Each pipeline stage must have exactly one operator")
        (op, arg), = stage.items()
        if op == "$match":
            current = [d for d in current if matches(d, arg)]
        elif op == "$unwind":
            current = _unwind(current, arg)
        elif op == "$group":
            current = _group(current, arg)
        elif op == "$sort":
            current = sort_documents(current, list(arg.items()))
        elif op == "$limit":
            current = current[: int(arg)]
        else:
            raise ValueError(f"Unsupported pipeline stage: {op}")
    return current
