"""
Image cache: file-backed, content-addressed storage of generated backgrounds.
"""

from lyricslides.cache.index import (
    CacheEntry,
    CacheFilter,
    CacheIndex,
    CacheKey,
    identity_file_id,
    parse_file_id,
    request_file_id,
    sidecar_path,
)

__all__ = [
    "CacheEntry",
    "CacheFilter",
    "CacheIndex",
    "CacheKey",
    "identity_file_id",
    "parse_file_id",
    "request_file_id",
    "sidecar_path",
]
