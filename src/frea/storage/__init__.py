"""Storage components for mirrored objects and follower checkpoints.

This package provides:
- FilesystemObjectStore / MemoryObjectStore: objects visible only once fully written
- S3ObjectStore: the same contract on an S3 bucket
- FileCheckpointStore: atomically replaced cursor documents
- ManifestWriter: JSON manifest documents streamed into an object store
"""

from frea.storage.checkpoint import FileCheckpointStore
from frea.storage.manifest import ManifestWriter
from frea.storage.objects import FilesystemObjectStore, MemoryObjectStore
from frea.storage.s3 import S3ObjectStore

__all__ = [
    "FileCheckpointStore",
    "FilesystemObjectStore",
    "ManifestWriter",
    "MemoryObjectStore",
    "S3ObjectStore",
]
