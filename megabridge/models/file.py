"""Per-file download state model"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, ForeignKey, Index, String
from sqlmodel import SQLModel, Field


class FileStatus(str, Enum):
    """Download lifecycle of a single file"""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class File(SQLModel, table=True):
    """A file discovered in a remote folder"""

    __tablename__ = "files"
    __table_args__ = (Index("idx_files_folder_status", "folder_id", "status"),)

    folder_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("folders.folder_id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    node_id: str = Field(primary_key=True)  # Stable id assigned by the remote source
    name: str
    size: int = Field(default=0, ge=0)
    timestamp: Optional[int] = None  # Remote modification time, epoch seconds
    status: str = Field(default=FileStatus.PENDING.value, index=True)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
