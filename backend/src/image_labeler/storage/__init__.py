"""Storage backends for objects and terminal-outcome markers"""

from .object_store import ObjectStore, InMemoryObjectStore, S3ObjectStore
from .result_store import ResultStore, InMemoryResultStore, DynamoDBResultStore

__all__ = [
    "ObjectStore",
    "InMemoryObjectStore",
    "S3ObjectStore",
    "ResultStore",
    "InMemoryResultStore",
    "DynamoDBResultStore",
]
