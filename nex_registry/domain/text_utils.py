from typing import Any, Iterable, Optional


def strip_nulls(value: Any) -> Any:
    """
    Recursively remove keys with value None from dictionaries.

    Lists are preserved, but their elements are also cleaned.
    """
    if isinstance(value, dict):
        return {k: strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_nulls(v) for v in value]
    return value


def match_any(values: Iterable[Optional[str]], keyword: str) -> bool:
    """
    Case-insensitive substring search over the non-empty ``values``.
    """
    k = keyword.lower()
    return any(k in str(v).lower() for v in values if v)
