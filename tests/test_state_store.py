"""Unit tests for the persistent state store"""

import pytest
from sqlalchemy import text

from megabridge.models import FileStatus
from megabridge.models.file import utcnow


@pytest.fixture
def folder(store):
    """A folder with three pending files"""
    folder = store.insert_folder("abc", "key", "Photos")
    store.insert_file("abc", "n1", "a.jpg", 10, 1700000000)
    store.insert_file("abc", "n2", "b.jpg", 20)
    store.insert_file("abc", "n3", "c.jpg", 30)
    return folder


class TestFolders:
    """Test folder rows"""

    def test_insert_and_get_folder(self, store, folder):
        """Test that an inserted folder is returned with default flags"""
        stored = store.get_folder("abc")

        assert stored is not None
        assert stored.name == "Photos"
        assert stored.folder_key == "key"
        assert stored.downloading is False
        assert stored.rate_limited is False
        assert stored.rate_limited_at is None
        assert stored.loaded_at is not None

    def test_get_unknown_folder(self, store):
        """Test that an unknown folder id returns None"""
        assert store.get_folder("missing") is None

    def test_get_all_folders_ordered_by_load_time(self, store):
        """Test that folders are listed in load order"""
        store.insert_folder("first", "k1", "First")
        store.insert_folder("second", "k2", "Second")

        assert [f.folder_id for f in store.get_all_folders()] == ["first", "second"]

    def test_delete_folder_cascades_to_files(self, store, folder):
        """Test that deleting a folder removes its files"""
        store.delete_folder("abc")

        assert store.get_folder("abc") is None
        assert store.get_files_for_folder("abc") == []
        assert store.get_file("abc", "n1") is None

    def test_rate_limited_flag(self, store, folder):
        """Test that setting and clearing the rate-limit flag maintains its timestamp"""
        store.set_folder_rate_limited("abc", True)

        limited = store.get_folder("abc")
        assert limited.rate_limited is True
        assert limited.rate_limited_at is not None
        assert [f.folder_id for f in store.get_rate_limited_folders()] == ["abc"]

        store.set_folder_rate_limited("abc", False)

        cleared = store.get_folder("abc")
        assert cleared.rate_limited is False
        assert cleared.rate_limited_at is None
        assert store.get_rate_limited_folders() == []


class TestFiles:
    """Test file rows and status transitions"""

    def test_insert_file_is_pending(self, store, folder):
        """Test that new files start pending with no error"""
        file = store.get_file("abc", "n1")

        assert file.status == FileStatus.PENDING.value
        assert file.error is None
        assert file.size == 10
        assert file.timestamp == 1700000000

    def test_files_for_folder_sorted_by_name(self, store, folder):
        """Test that a folder's files are listed by name"""
        assert [f.name for f in store.get_files_for_folder("abc")] == ["a.jpg", "b.jpg", "c.jpg"]

    def test_update_file_status_accepts_enum(self, store, folder):
        """Test that status updates store the plain status string"""
        started = utcnow()
        store.update_file_status("abc", "n1", FileStatus.FAILED, "boom", started, utcnow())

        file = store.get_file("abc", "n1")
        assert file.status == "failed"
        assert file.error == "boom"
        assert file.started_at is not None
        assert file.completed_at is not None

    def test_update_missing_file_is_noop(self, store, folder):
        """Test that updating a row that no longer exists does not recreate it"""
        store.delete_folder("abc")

        store.update_file_status("abc", "n1", FileStatus.COMPLETED)
        store.set_folder_downloading("abc", True)
        store.refresh_folder_downloading_status("abc")

        assert store.get_file("abc", "n1") is None
        assert store.get_folder("abc") is None

    def test_filter_by_status(self, store, folder):
        """Test status queries globally and per folder"""
        store.insert_folder("other", "k", "Other")
        store.insert_file("other", "x1", "x.bin", 1)
        store.update_file_status("abc", "n2", FileStatus.FAILED, "err")

        pending = store.get_files_with_status(FileStatus.PENDING)
        assert {(f.folder_id, f.node_id) for f in pending} == {("abc", "n1"), ("abc", "n3"), ("other", "x1")}

        failed = store.get_files_by_folder_and_status("abc", "failed")
        assert [f.node_id for f in failed] == ["n2"]
        assert store.get_files_by_folder_and_status("other", "failed") == []

    def test_file_stats(self, store, folder):
        """Test per-folder counts by status"""
        store.update_file_status("abc", "n1", FileStatus.COMPLETED)
        store.update_file_status("abc", "n2", FileStatus.DOWNLOADING)
        store.insert_folder("empty", "k", "Empty")

        stats = store.get_file_stats()

        assert stats["abc"] == {"total": 3, "completed": 1, "downloading": 1, "pending": 1, "failed": 0}
        assert "empty" not in stats


class TestRecovery:
    """Test derived flags and crash recovery"""

    def test_refresh_downloading_status(self, store, folder):
        """Test that the folder flag follows its files' downloading status"""
        store.update_file_status("abc", "n1", FileStatus.DOWNLOADING)
        store.refresh_folder_downloading_status("abc")
        assert store.get_folder("abc").downloading is True

        store.update_file_status("abc", "n1", FileStatus.COMPLETED)
        store.refresh_folder_downloading_status("abc")
        assert store.get_folder("abc").downloading is False

    def test_reset_interrupted_downloads(self, store, folder):
        """Test that rows left downloading go back to pending"""
        store.update_file_status("abc", "n1", FileStatus.DOWNLOADING, None, utcnow())
        store.update_file_status("abc", "n2", FileStatus.COMPLETED, None, utcnow(), utcnow())

        assert store.reset_interrupted_downloads() == 1

        reset = store.get_file("abc", "n1")
        assert reset.status == "pending"
        assert reset.started_at is None
        assert store.get_file("abc", "n2").status == "completed"
        assert store.reset_interrupted_downloads() == 0

    def test_reset_interrupted_downloads_clears_folder_flags(self, store, folder):
        """Test that recovery leaves no folder flagged downloading once its rows are pending"""
        store.insert_folder("idle", "key", "Idle")
        store.update_file_status("abc", "n1", FileStatus.DOWNLOADING, None, utcnow())
        store.set_folder_downloading("abc", True)
        store.set_folder_downloading("idle", True)

        store.reset_interrupted_downloads()

        assert store.get_folder("abc").downloading is False
        assert store.get_folder("idle").downloading is False

    def test_refresh_all_downloading_status(self, store, folder):
        """Test that every folder flag is recomputed from its own files"""
        store.insert_folder("other", "key", "Other")
        store.insert_file("other", "m1", "m.jpg", 5)
        store.update_file_status("abc", "n2", FileStatus.DOWNLOADING, None, utcnow())
        store.set_folder_downloading("other", True)

        store.refresh_all_downloading_status()

        assert store.get_folder("abc").downloading is True
        assert store.get_folder("other").downloading is False


class TestDatabase:
    """Test schema setup"""

    def test_migrations_recorded_once(self, database, app_settings):
        """Test that re-initialising an up-to-date database applies nothing"""
        database.initialize()

        with database.engine.connect() as conn:
            versions = [row[0] for row in conn.execute(text("SELECT version FROM schema_migrations"))]

        assert versions == [1]

    @pytest.mark.asyncio
    async def test_health_check(self, database):
        """Test that an initialised database reports healthy"""
        assert await database.health_check() is True
