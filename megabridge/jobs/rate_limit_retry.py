"""Periodic retry of rate-limited folders"""

from megabridge.services.download_service import DownloadService
from megabridge.utils.logger import get_logger

logger = get_logger(__name__)


async def retry_rate_limited_folders_job(downloads: DownloadService):
    """Retry every folder currently flagged as rate limited"""
    folders = downloads.store.get_rate_limited_folders()
    if not folders:
        logger.debug("No rate-limited folders to retry")
        return

    logger.info(f"Retrying {len(folders)} rate-limited folder(s)")

    for folder in folders:
        try:
            count = await downloads.retry_folder(folder.folder_id)
            logger.info("Auto-retry queued files", folder_id=folder.folder_id, count=count)
        except Exception as e:
            # One bad folder must not stop the sweep
            logger.error("Auto-retry failed", folder_id=folder.folder_id, error=str(e))
