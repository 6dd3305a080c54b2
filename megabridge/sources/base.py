"""Remote folder source abstraction"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional


class SourceError(Exception):
    """Raised when the remote source fails to list or stream content"""
    pass


class RateLimitedError(SourceError):
    """Raised when the remote source throttles requests; retrying later is expected to succeed"""
    pass


RATE_LIMIT_SIGNATURES = ("ETOOMANY", "Too many")


def is_rate_limit_error(error: BaseException) -> bool:
    """Classify a transfer failure as throttling rather than a permanent failure"""
    if isinstance(error, RateLimitedError):
        return True
    message = str(error)
    return any(signature in message for signature in RATE_LIMIT_SIGNATURES)


@dataclass(frozen=True)
class FolderRef:
    """Identifier and secret key parsed from a folder link"""

    folder_id: str
    folder_key: str


class RemoteFile(ABC):
    """A file inside a remote folder; the handle is process-local and cannot be persisted"""

    node_id: str
    name: str
    size: int
    timestamp: Optional[int]

    @abstractmethod
    def stream(self) -> AsyncIterator[bytes]:
        """Open the file and yield its decoded content in chunks"""
        pass


@dataclass
class RemoteFolder:
    """An opened remote folder and every file beneath it, flattened"""

    folder_id: str
    name: Optional[str]
    files: List[RemoteFile] = field(default_factory=list)

    def file_map(self) -> Dict[str, RemoteFile]:
        return {f.node_id: f for f in self.files}


class FolderSource(ABC):
    """Capability to open remote folders and stream their files"""

    @abstractmethod
    def parse_url(self, url: str) -> Optional[FolderRef]:
        """Return the folder reference for a link, or None if the link is not recognised"""
        pass

    @abstractmethod
    async def open_folder(self, folder_id: str, folder_key: str) -> RemoteFolder:
        """Load the folder listing; raises SourceError on failure"""
        pass

    async def close(self):
        """Release network resources"""
        pass
