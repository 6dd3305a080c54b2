"""Remote folder tracking model"""

from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class Folder(SQLModel, table=True):
    """A remote folder loaded for download"""

    __tablename__ = "folders"

    folder_id: str = Field(primary_key=True)
    folder_key: str  # Secret needed to reopen the remote folder
    name: Optional[str] = None
    loaded_at: datetime
    downloading: bool = Field(default=False, description="At least one file is being transferred")
    rate_limited: bool = Field(default=False, description="Remote source throttled this folder")
    rate_limited_at: Optional[datetime] = None
