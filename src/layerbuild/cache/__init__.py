"""
Layer Build Cache Module

- CacheStore: Content-addressed, reference counted layer store
- MemoryCacheStore: In-process backend
- FileCacheStore: Durable fsspec backend
- LayerRecord: Index entry of a stored layer
- prune_all / older_than: Prune predicates
"""

from .index import LayerRecord, PrunePredicate, older_than, parse_age, prune_all
from .store import CacheStore, FileCacheStore, MemoryCacheStore

__all__ = [
    'CacheStore',
    'MemoryCacheStore',
    'FileCacheStore',
    'LayerRecord',
    'PrunePredicate',
    'older_than',
    'parse_age',
    'prune_all',
]
