"""Remote folder sources"""

from megabridge.sources.base import (
    FolderRef,
    FolderSource,
    RateLimitedError,
    RemoteFile,
    RemoteFolder,
    SourceError,
    is_rate_limit_error,
)

__all__ = [
    "FolderRef",
    "FolderSource",
    "RateLimitedError",
    "RemoteFile",
    "RemoteFolder",
    "SourceError",
    "is_rate_limit_error",
]
