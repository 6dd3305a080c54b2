"""Process-local cache of opened remote folder handles"""

from typing import Dict, Optional

from megabridge.sources.base import FolderSource, RemoteFolder
from megabridge.utils.logger import get_logger

logger = get_logger(__name__)


class FolderCache:
    """
    Maps folder ids to open remote folder handles.

    Handles cannot be persisted, so the cache starts empty on every run and is
    refilled on demand through the source.
    """

    def __init__(self, source: FolderSource):
        self._source = source
        self._folders: Dict[str, RemoteFolder] = {}

    def get(self, folder_id: str) -> Optional[RemoteFolder]:
        return self._folders.get(folder_id)

    def put(self, folder_id: str, folder: RemoteFolder):
        self._folders[folder_id] = folder

    def discard(self, folder_id: str):
        self._folders.pop(folder_id, None)

    def __contains__(self, folder_id: str) -> bool:
        return folder_id in self._folders

    def __len__(self) -> int:
        return len(self._folders)

    async def ensure_loaded(self, folder_id: str, folder_key: str) -> RemoteFolder:
        """Return the cached handle, reopening the folder through the source on a miss"""
        folder = self._folders.get(folder_id)
        if folder is None:
            logger.debug("Folder handle not cached, reopening", folder_id=folder_id)
            folder = await self._source.open_folder(folder_id, folder_key)
            self._folders[folder_id] = folder
        return folder
