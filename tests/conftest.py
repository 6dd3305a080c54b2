"""Pytest configuration and shared fixtures"""

import asyncio
import os
from typing import Dict, Generator, List, Optional, Tuple

import pytest

from megabridge.config import Settings
from megabridge.database import DatabaseService
from megabridge.services.download_service import DownloadService
from megabridge.services.state_store import StateStore
from megabridge.sources.base import FolderRef, FolderSource, RemoteFile, RemoteFolder, SourceError
from megabridge.sources.mega import FOLDER_URL_PATTERN

SETTINGS_ENV_VARS = [
    "HOST",
    "PORT",
    "DOWNLOAD_DIR",
    "DB_PATH",
    "DATABASE_URL",
    "MAX_CONCURRENT",
    "RETRY_INTERVAL",
    "REQUEST_BODY_MAX_BYTES",
    "SHUTDOWN_TIMEOUT_MS",
    "TRANSFER_TIMEOUT_SECONDS",
    "SOURCE_TIMEOUT_SECONDS",
    "LOG_LEVEL",
    "ENVIRONMENT",
    "NODE_ENV",
]


@pytest.fixture(autouse=True)
def reset_env_vars() -> Generator[None, None, None]:
    """Reset environment variables before each test"""
    original_env = os.environ.copy()

    for var in SETTINGS_ENV_VARS:
        os.environ.pop(var, None)

    yield

    os.environ.clear()
    os.environ.update(original_env)


class FakeFile(RemoteFile):
    """Remote file whose stream can be held open or made to fail"""

    def __init__(
        self,
        node_id: str,
        name: str,
        data: bytes = b"file-content",
        timestamp: Optional[int] = None,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.node_id = node_id
        self.name = name
        self.size = len(data)
        self.timestamp = timestamp
        self.data = data
        self.error = error
        self.gate = gate
        self.stream_calls = 0

    async def stream(self):
        self.stream_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        for i in range(0, len(self.data), 4):
            yield self.data[i:i + 4]


class FakeSource(FolderSource):
    """In-memory folder source keyed by folder id"""

    def __init__(self):
        self.folders: Dict[str, Tuple[Optional[str], List[FakeFile]]] = {}
        self.open_calls: List[str] = []
        self.open_error: Optional[Exception] = None
        self.closed = False

    def add_folder(self, folder_id: str, files: List[FakeFile], name: Optional[str] = "Test Folder"):
        self.folders[folder_id] = (name, files)

    def parse_url(self, url: str) -> Optional[FolderRef]:
        match = FOLDER_URL_PATTERN.search(url)
        if not match:
            return None
        return FolderRef(folder_id=match.group(1), folder_key=match.group(2))

    async def open_folder(self, folder_id: str, folder_key: str) -> RemoteFolder:
        self.open_calls.append(folder_id)
        if self.open_error is not None:
            raise self.open_error
        if folder_id not in self.folders:
            raise SourceError("Folder is empty or unavailable")
        name, files = self.folders[folder_id]
        return RemoteFolder(folder_id=folder_id, name=name, files=list(files))

    async def close(self):
        self.closed = True


def folder_url(folder_id: str, key: str = "c2VjcmV0a2V5") -> str:
    return f"https://mega.nz/folder/{folder_id}#{key}"


async def wait_until(predicate, timeout: float = 2.0):
    """Poll until predicate() is true or fail after timeout seconds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    """Settings pointing at a temporary download directory and database"""
    return Settings(
        _env_file=None,
        download_dir=str(tmp_path / "files"),
        db_path=str(tmp_path / "db" / "test.db"),
        max_concurrent=2,
    )


@pytest.fixture
def database(app_settings) -> Generator[DatabaseService, None, None]:
    db = DatabaseService(app_settings.database_url)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def store(database) -> StateStore:
    return StateStore(database)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def downloads(app_settings, store, source) -> DownloadService:
    return DownloadService(app_settings, store, source)
