"""Asset tree scanning, classification and upload."""

from .content_types import CONTENT_TYPES, DEFAULT_CONTENT_TYPE, cache_control, classify
from .synchronizer import AssetSynchronizer, hash_file, object_id

__all__ = [
    "AssetSynchronizer",
    "CONTENT_TYPES",
    "DEFAULT_CONTENT_TYPE",
    "cache_control",
    "classify",
    "hash_file",
    "object_id",
]
