"""Download orchestration: folder loading, transfers, retry and resume"""

import asyncio
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from megabridge.config import Settings
from megabridge.exceptions import ConflictError, NotFoundError, UpstreamError, ValidationError
from megabridge.models import File, FileStatus
from megabridge.models.file import utcnow
from megabridge.services.download_queue import DownloadJob, DownloadQueue
from megabridge.services.folder_cache import FolderCache
from megabridge.services.state_store import StateStore
from megabridge.sources.base import FolderSource, RemoteFile, RemoteFolder, SourceError, is_rate_limit_error
from megabridge.utils.logger import get_logger, sanitize_folder_url

logger = get_logger(__name__)

RATE_LIMITED_MESSAGE = "Rate limited"


class DownloadService:
    """
    Owns the job queue, the folder handle cache and the transfer logic.

    Every file state transition is written to the store as it happens, so the
    store alone is enough to pick up where an interrupted run stopped.
    """

    def __init__(self, settings: Settings, store: StateStore, source: FolderSource):
        self.settings = settings
        self.store = store
        self.source = source
        self.download_dir = Path(settings.download_dir)
        self.folder_cache = FolderCache(source)
        self.queue = DownloadQueue(self._download_file, settings.max_concurrent)

    # Public API

    async def add_folder(self, url: str) -> Dict[str, Any]:
        """Load a folder link, record its files as pending and start downloading them"""
        ref = self.source.parse_url(url)
        if not ref:
            raise ValidationError("Invalid MEGA folder URL")

        folder_id = ref.folder_id
        self._folder_dir(folder_id)

        if self.store.get_folder(folder_id):
            raise ConflictError("Folder already loaded")
        self._check_not_draining(folder_id)

        logger.info("Loading folder", url=sanitize_folder_url(url))
        try:
            remote_folder = await self.source.open_folder(folder_id, ref.folder_key)
        except SourceError as e:
            raise UpstreamError(f"Failed to load folder: {e}") from e

        # Another request may have loaded the same folder while we were waiting
        if self.store.get_folder(folder_id):
            raise ConflictError("Folder already loaded")
        self._check_not_draining(folder_id)

        folder_name = remote_folder.name or folder_id
        self.store.insert_folder(folder_id, ref.folder_key, folder_name)
        self.folder_cache.put(folder_id, remote_folder)

        for remote_file in remote_folder.files:
            self.store.insert_file(
                folder_id,
                remote_file.node_id,
                remote_file.name or "unknown",
                remote_file.size or 0,
                remote_file.timestamp,
            )
            self.queue.enqueue(self._make_job(folder_id, remote_file))

        self.queue.drain()
        logger.info("Folder loaded", folder_id=folder_id, name=folder_name, files=len(remote_folder.files))

        return {"folderId": folder_id, "name": folder_name, "fileCount": len(remote_folder.files)}

    async def retry_folder(self, folder_id: str) -> int:
        """
        Re-queue a folder's failed and pending files.

        Clears the folder's rate-limit flag. Returns the number of files reset to
        pending; files whose node is missing from the remote listing stay pending
        without a job.
        """
        folder = self.store.get_folder(folder_id)
        if not folder:
            raise NotFoundError("Folder not found")

        self.store.set_folder_rate_limited(folder_id, False)

        failed = self.store.get_files_by_folder_and_status(folder_id, FileStatus.FAILED)
        pending = self.store.get_files_by_folder_and_status(folder_id, FileStatus.PENDING)
        files_to_retry = failed + pending

        if not files_to_retry:
            return 0

        try:
            remote_folder = await self.folder_cache.ensure_loaded(folder_id, folder.folder_key)
        except SourceError as e:
            raise UpstreamError(f"Failed to load folder: {e}") from e

        for row in files_to_retry:
            self.store.update_file_status(folder_id, row.node_id, FileStatus.PENDING, None, None, None)

        queued, skipped = self._enqueue_resolvable(folder_id, files_to_retry, remote_folder)
        self.queue.drain()

        logger.info("Retrying folder", folder_id=folder_id, count=len(files_to_retry), queued=queued, skipped=skipped)
        return len(files_to_retry)

    def remove_folder(self, folder_id: str):
        """Forget a folder: drop its queued jobs, its files on disk and its rows"""
        folder = self.store.get_folder(folder_id)
        if not folder:
            raise NotFoundError("Folder not found")

        dropped = self.queue.remove_folder_jobs(folder_id)

        folder_path = self._folder_dir(folder_id)
        if folder_path.exists():
            shutil.rmtree(folder_path, ignore_errors=True)

        self.store.delete_folder(folder_id)
        self.folder_cache.discard(folder_id)
        logger.info("Folder removed", folder_id=folder_id, dropped_jobs=dropped)

    def get_file_path(self, folder_id: str, node_id: str, filename: str) -> Path:
        safe_name = filename.replace("/", "_").replace("\\", "_")
        return self._folder_dir(folder_id) / f"{node_id}_{safe_name}"

    async def resume_downloads(self) -> int:
        """
        Reconcile stored state after a restart and re-queue unfinished work.

        Rows left 'downloading' belonged to a process that no longer exists and
        go back to 'pending'. Every pending row whose node can be resolved in the
        (re)opened folder gets a job. A folder that fails to open is skipped.
        Returns the number of jobs queued.
        """
        logger.info("Checking for interrupted downloads")

        reset_count = self.store.reset_interrupted_downloads()
        if reset_count > 0:
            logger.info("Reset interrupted downloads", count=reset_count)

        pending_by_folder: Dict[str, List[File]] = {}
        for row in self.store.get_files_with_status(FileStatus.PENDING):
            pending_by_folder.setdefault(row.folder_id, []).append(row)

        total_queued = 0
        for folder_id, rows in pending_by_folder.items():
            folder = self.store.get_folder(folder_id)
            if not folder:
                continue

            try:
                remote_folder = await self.folder_cache.ensure_loaded(folder_id, folder.folder_key)
            except Exception as e:
                logger.error("Failed to resume folder", folder_id=folder_id, error=str(e))
                continue

            queued, skipped = self._enqueue_resolvable(folder_id, rows, remote_folder)
            total_queued += queued
            logger.info("Resuming downloads", folder_id=folder_id, count=queued, skipped=skipped)

        self.queue.drain()
        return total_queued

    def shutdown(self):
        """Drop queued jobs; transfers already running finish on their own"""
        dropped = self.queue.clear()
        self.folder_cache = FolderCache(self.source)
        logger.info("Download service stopped", dropped_jobs=dropped, active=self.queue.active_count)

    # Private

    def _folder_dir(self, folder_id: str) -> Path:
        folder_path = self.download_dir / folder_id
        if not folder_id or folder_path.resolve().parent != self.download_dir.resolve():
            raise ValidationError("Invalid folder id")
        return folder_path

    def _check_not_draining(self, folder_id: str):
        """A removed folder cannot be reloaded until its in-flight transfers have finished"""
        if self.queue.has_running_jobs(folder_id):
            raise ConflictError("Folder is still finishing transfers from a previous load, try again shortly")

    def _make_job(self, folder_id: str, remote_file: RemoteFile) -> DownloadJob:
        return DownloadJob(
            folder_id=folder_id,
            node_id=remote_file.node_id,
            remote_file=remote_file,
            name=remote_file.name or "unknown",
            size=remote_file.size or 0,
        )

    def _enqueue_resolvable(
        self, folder_id: str, rows: Iterable[File], remote_folder: RemoteFolder
    ) -> Tuple[int, int]:
        """Queue a job for every row whose node is in the listing and not already queued"""
        file_map = remote_folder.file_map()
        queued = skipped = 0

        for row in rows:
            remote_file = file_map.get(row.node_id)
            if remote_file is None:
                skipped += 1
                continue
            if self.queue.has_job(folder_id, row.node_id):
                continue
            self.queue.enqueue(
                DownloadJob(
                    folder_id=folder_id,
                    node_id=row.node_id,
                    remote_file=remote_file,
                    name=row.name,
                    size=row.size,
                )
            )
            queued += 1

        if skipped:
            # TODO: mark rows failed after repeated misses instead of leaving them pending
            logger.warning("Files missing from remote listing left pending", folder_id=folder_id, count=skipped)

        return queued, skipped

    async def _download_file(self, job: DownloadJob):
        """Transfer one file and record the outcome; never raises"""
        folder_id, node_id, name = job.folder_id, job.node_id, job.name

        # The folder may have been removed after this job was started
        if not self.store.get_folder(folder_id):
            logger.debug("Skipping job for removed folder", folder_id=folder_id, node_id=node_id)
            return

        file_path = self.get_file_path(folder_id, node_id, name)
        started_at = utcnow()

        self.store.update_file_status(folder_id, node_id, FileStatus.DOWNLOADING, None, started_at, None)
        self.store.set_folder_downloading(folder_id, True)
        logger.info("Downloading", name=name, size=job.size, folder_id=folder_id)

        timeout = self.settings.transfer_timeout_seconds
        try:
            if timeout:
                await asyncio.wait_for(self._write_stream(job, file_path), timeout=timeout)
            else:
                await self._write_stream(job, file_path)
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning("Rate limited", name=name, folder_id=folder_id)
                self.store.update_file_status(folder_id, node_id, FileStatus.PENDING, RATE_LIMITED_MESSAGE, None, None)
                self.store.set_folder_rate_limited(folder_id, True)
            else:
                if timeout and isinstance(e, asyncio.TimeoutError):
                    error_message = f"Download timed out after {timeout}s"
                else:
                    error_message = str(e) or e.__class__.__name__
                logger.error("Download failed", name=name, folder_id=folder_id, error=error_message)
                self.store.update_file_status(
                    folder_id, node_id, FileStatus.FAILED, error_message, started_at, utcnow()
                )

            # Status is recorded first so a cleanup failure cannot leave the row downloading
            try:
                file_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning("Failed to remove partial file", path=str(file_path), error=str(cleanup_error))
        else:
            logger.info("Download completed", name=name, folder_id=folder_id)
            self.store.update_file_status(folder_id, node_id, FileStatus.COMPLETED, None, started_at, utcnow())
        finally:
            self.store.refresh_folder_downloading_status(folder_id)

    async def _write_stream(self, job: DownloadJob, file_path: Path):
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "wb") as fh:
            async for chunk in job.remote_file.stream():
                fh.write(chunk)
