"""Durable folder and file state backed by the database"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import case, delete, exists, func, update
from sqlmodel import select

from megabridge.database import DatabaseService
from megabridge.models import File, FileStatus, Folder
from megabridge.models.file import utcnow
from megabridge.utils.logger import get_logger

logger = get_logger(__name__)

EMPTY_STATS = {"total": 0, "completed": 0, "downloading": 0, "pending": 0, "failed": 0}


class StateStore:
    """
    Single-statement accessors for Folder and File rows.

    Every mutation runs in its own session and commits immediately. Updates that
    target rows which no longer exist (e.g. a folder deleted while one of its
    transfers was still running) are silent no-ops.
    """

    def __init__(self, database: DatabaseService):
        self.database = database

    # Folder operations

    def insert_folder(self, folder_id: str, folder_key: str, name: str) -> Folder:
        folder = Folder(
            folder_id=folder_id,
            folder_key=folder_key,
            name=name,
            loaded_at=utcnow(),
            downloading=False,
            rate_limited=False,
            rate_limited_at=None,
        )
        with self.database.get_session() as session:
            session.add(folder)
            session.commit()
        return folder

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        with self.database.get_session() as session:
            return session.get(Folder, folder_id)

    def get_all_folders(self) -> List[Folder]:
        with self.database.get_session() as session:
            return list(session.exec(select(Folder).order_by(Folder.loaded_at)).all())

    def delete_folder(self, folder_id: str) -> None:
        """Delete a folder; its files go with it through ON DELETE CASCADE"""
        self._execute(delete(Folder).where(Folder.folder_id == folder_id))

    def set_folder_downloading(self, folder_id: str, downloading: bool) -> None:
        self._execute(update(Folder).where(Folder.folder_id == folder_id).values(downloading=downloading))

    def set_folder_rate_limited(self, folder_id: str, limited: bool) -> None:
        self._execute(
            update(Folder)
            .where(Folder.folder_id == folder_id)
            .values(rate_limited=limited, rate_limited_at=utcnow() if limited else None)
        )

    def get_rate_limited_folders(self) -> List[Folder]:
        with self.database.get_session() as session:
            return list(session.exec(select(Folder).where(Folder.rate_limited == True)).all())  # noqa: E712

    # File operations

    def insert_file(
        self,
        folder_id: str,
        node_id: str,
        name: str,
        size: int,
        timestamp: Optional[int] = None,
    ) -> File:
        file = File(
            folder_id=folder_id,
            node_id=node_id,
            name=name,
            size=size,
            timestamp=timestamp,
            status=FileStatus.PENDING.value,
        )
        with self.database.get_session() as session:
            session.add(file)
            session.commit()
        return file

    def get_file(self, folder_id: str, node_id: str) -> Optional[File]:
        with self.database.get_session() as session:
            return session.get(File, (folder_id, node_id))

    def get_files_for_folder(self, folder_id: str) -> List[File]:
        with self.database.get_session() as session:
            statement = select(File).where(File.folder_id == folder_id).order_by(File.name)
            return list(session.exec(statement).all())

    def update_file_status(
        self,
        folder_id: str,
        node_id: str,
        status: str,
        error: Optional[str] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        self._execute(
            update(File)
            .where(File.folder_id == folder_id, File.node_id == node_id)
            .values(
                status=_status_value(status),
                error=error,
                started_at=started_at,
                completed_at=completed_at,
            )
        )

    def get_files_with_status(self, status: str) -> List[File]:
        with self.database.get_session() as session:
            return list(session.exec(select(File).where(File.status == _status_value(status))).all())

    def get_files_by_folder_and_status(self, folder_id: str, status: str) -> List[File]:
        with self.database.get_session() as session:
            statement = select(File).where(File.folder_id == folder_id, File.status == _status_value(status))
            return list(session.exec(statement).all())

    def get_file_stats(self) -> Dict[str, Dict[str, int]]:
        """Per-folder file counts by status"""

        def count_status(status: FileStatus):
            return func.coalesce(func.sum(case((File.status == status.value, 1), else_=0)), 0)

        statement = select(
            File.folder_id,
            func.count().label("total"),
            count_status(FileStatus.COMPLETED).label("completed"),
            count_status(FileStatus.DOWNLOADING).label("downloading"),
            count_status(FileStatus.PENDING).label("pending"),
            count_status(FileStatus.FAILED).label("failed"),
        ).group_by(File.folder_id)

        with self.database.engine.connect() as conn:
            rows = conn.execute(statement).all()

        return {
            row.folder_id: {
                "total": row.total,
                "completed": row.completed,
                "downloading": row.downloading,
                "pending": row.pending,
                "failed": row.failed,
            }
            for row in rows
        }

    # Helpers

    def refresh_folder_downloading_status(self, folder_id: str) -> None:
        """Recompute the folder's downloading flag from its files in one statement"""
        in_flight = exists().where(
            File.folder_id == folder_id,
            File.status == FileStatus.DOWNLOADING.value,
        )
        self._execute(update(Folder).where(Folder.folder_id == folder_id).values(downloading=in_flight))

    def reset_interrupted_downloads(self) -> int:
        """
        Return every 'downloading' row to 'pending'; at startup such rows are crash leftovers.

        Every folder's downloading flag is recomputed afterwards, so no folder stays
        flagged when none of its files is in flight.
        """
        reset_count = self._execute(
            update(File)
            .where(File.status == FileStatus.DOWNLOADING.value)
            .values(status=FileStatus.PENDING.value, error=None, started_at=None, completed_at=None)
        )
        self.refresh_all_downloading_status()
        return reset_count

    def refresh_all_downloading_status(self) -> None:
        in_flight = (
            exists()
            .where(
                File.folder_id == Folder.folder_id,
                File.status == FileStatus.DOWNLOADING.value,
            )
            .correlate(Folder)
        )
        self._execute(update(Folder).values(downloading=in_flight))

    def _execute(self, statement) -> int:
        """Run a single auto-committed write and return the affected row count"""
        with self.database.engine.begin() as conn:
            result = conn.execute(statement)
            return result.rowcount or 0


def _status_value(status) -> str:
    return status.value if isinstance(status, FileStatus) else status
