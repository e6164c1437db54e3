"""
Document storage for the package registry.

This package is responsible for:
* Defining the abstract document-store contract used by the domain and services.
* Persisting collections (packages, versions, reviews) as JSON files on disk.
* Evaluating Mongo-style filters, projections, sorts and rollup pipelines.
* Serialising read-modify-write cycles on a single record via per-key locks.
"""
