from .codec import CompositeKeyCodec, DirectKeyCodec, build_codec
from .locks import ReadWriteLock
from .manager import IndexHandle, IndexManager, SearchHit

__all__ = [
    "CompositeKeyCodec",
    "DirectKeyCodec",
    "build_codec",
    "ReadWriteLock",
    "IndexHandle",
    "IndexManager",
    "SearchHit",
]
