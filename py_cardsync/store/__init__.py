"""Storage interfaces and the in-memory reference implementation."""

from .backend import PhotoStore, RecordStore
from .memory import MemoryPhotoStore, MemoryRecordStore

__all__ = ["MemoryPhotoStore", "MemoryRecordStore", "PhotoStore", "RecordStore"]
