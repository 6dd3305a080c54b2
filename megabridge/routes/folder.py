"""Folder API: load, inspect, download, retry and remove folders"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from megabridge.exceptions import NotFoundError, ValidationError
from megabridge.models import File, FileStatus, Folder
from megabridge.services.download_service import DownloadService
from megabridge.services.state_store import EMPTY_STATS

router = APIRouter(prefix="/folder", tags=["folder"])


class AddFolderRequest(BaseModel):
    url: Optional[str] = None


def get_downloads(request: Request) -> DownloadService:
    return request.app.state.downloads


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a stored datetime as an ISO-8601 UTC string with milliseconds"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def serialize_folder(folder: Folder) -> Dict[str, Any]:
    return {
        "folderId": folder.folder_id,
        "name": folder.name or folder.folder_id,
        "loadedAt": format_timestamp(folder.loaded_at),
        "downloading": folder.downloading,
        "rateLimited": folder.rate_limited,
        "rateLimitedAt": format_timestamp(folder.rate_limited_at),
    }


def serialize_file(file: File) -> Dict[str, Any]:
    return {
        "nodeId": file.node_id,
        "name": file.name,
        "size": file.size,
        "timestamp": file.timestamp,
        "status": file.status,
        "error": file.error,
        "startedAt": format_timestamp(file.started_at),
        "completedAt": format_timestamp(file.completed_at),
    }


@router.get("")
async def list_folders(downloads: DownloadService = Depends(get_downloads)) -> List[Dict[str, Any]]:
    """List every folder with per-status file counts"""
    store = downloads.store
    stats = store.get_file_stats()

    result = []
    for folder in store.get_all_folders():
        summary = serialize_folder(folder)
        summary["files"] = dict(stats.get(folder.folder_id, EMPTY_STATS))
        result.append(summary)
    return result


@router.post("", status_code=201)
async def add_folder(
    payload: Optional[AddFolderRequest] = Body(default=None),
    downloads: DownloadService = Depends(get_downloads),
) -> Dict[str, Any]:
    """Load a MEGA folder link and start downloading its files"""
    url = payload.url if payload else None
    if not url:
        raise ValidationError("Missing required field: url")

    result = await downloads.add_folder(url)
    return {**result, "message": "Folder loaded, downloads started"}


@router.get("/{folder_id}")
async def get_folder(folder_id: str, downloads: DownloadService = Depends(get_downloads)) -> Dict[str, Any]:
    store = downloads.store
    folder = store.get_folder(folder_id)
    if not folder:
        raise NotFoundError("Folder not found")

    details = serialize_folder(folder)
    details["name"] = folder.name
    details["files"] = [serialize_file(f) for f in store.get_files_for_folder(folder_id)]
    return details


@router.get("/{folder_id}/{node_id}")
async def download_file(folder_id: str, node_id: str, downloads: DownloadService = Depends(get_downloads)):
    """Serve a completed file as an attachment"""
    file = downloads.store.get_file(folder_id, node_id)
    if not file:
        raise NotFoundError("File not found")

    if file.status != FileStatus.COMPLETED.value:
        return JSONResponse(status_code=409, content={"error": "File not ready", "status": file.status})

    file_path = downloads.get_file_path(folder_id, node_id, file.name)
    if not file_path.is_file():
        raise NotFoundError("File not found on disk")

    return FileResponse(
        file_path,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{quote(file.name, safe="")}"'},
    )


@router.delete("/{folder_id}")
async def delete_folder(folder_id: str, downloads: DownloadService = Depends(get_downloads)) -> Dict[str, Any]:
    downloads.remove_folder(folder_id)
    return {"message": "Folder deleted"}


@router.post("/{folder_id}/retry")
async def retry_folder(folder_id: str, downloads: DownloadService = Depends(get_downloads)) -> Dict[str, Any]:
    """Re-queue failed and pending files of a folder"""
    count = await downloads.retry_folder(folder_id)
    return {"message": "Retrying failed downloads", "count": count}
