from .object_store import LocalObjectStore, ObjectInfo, ObjectStore, S3ObjectStore
from .reconcile import FailurePolicy, Reconciler, SyncReport

__all__ = [
    "LocalObjectStore",
    "ObjectInfo",
    "ObjectStore",
    "S3ObjectStore",
    "FailurePolicy",
    "Reconciler",
    "SyncReport",
]
