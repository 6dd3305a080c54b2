"""Models module"""

from megabridge.models.folder import Folder
from megabridge.models.file import File, FileStatus

__all__ = ["Folder", "File", "FileStatus"]
