"""Database setup and configuration using SQLModel"""

import os
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy import event, text
from sqlalchemy.engine import Connection, Engine
from sqlmodel import SQLModel, Session, create_engine, select

from megabridge.models import File, Folder  # noqa: F401  (registers tables on SQLModel.metadata)
from megabridge.utils.logger import get_logger

logger = get_logger(__name__)


def _create_initial_schema(conn: Connection) -> None:
    SQLModel.metadata.create_all(conn)


# Ordered (version, name, apply) triples; append new entries, never edit applied ones
MIGRATIONS: List[Tuple[int, str, Callable[[Connection], None]]] = [
    (1, "initial_schema", _create_initial_schema),
]

CRITICAL_TABLES = ["folders", "files", "schema_migrations"]


class DatabaseService:
    """Database service for managing the SQLModel database"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[Engine] = None

    def initialize(self):
        """Initialize database connection and bring the schema up to date"""
        try:
            database_url = self.database_url
            is_sqlite = database_url.startswith("sqlite:///")

            if is_sqlite:
                path = database_url.replace("sqlite:///", "", 1)
                db_dir = os.path.dirname(path)
                if path != ":memory:" and db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    logger.debug(f"Created database directory: {db_dir}")

                self.engine = create_engine(
                    database_url,
                    connect_args={"check_same_thread": False},
                    echo=False,
                    pool_pre_ping=True,
                )
                event.listen(self.engine, "connect", _set_sqlite_pragmas)
            else:
                self.engine = create_engine(
                    database_url,
                    echo=False,
                    pool_pre_ping=True,
                    pool_size=5,
                    max_overflow=10,
                    pool_recycle=3600,
                )

            logger.info("Initializing database", path=database_url.split("/")[-1])

            self._apply_migrations()
            self._verify_database_integrity()

            logger.debug("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def _apply_migrations(self):
        """Apply pending schema migrations, each inside its own transaction"""
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE IF NOT EXISTS schema_migrations ("
                    "version INTEGER PRIMARY KEY, "
                    "name TEXT NOT NULL, "
                    "applied_at TEXT NOT NULL)"
                )
            )
            applied = {row[0] for row in conn.execute(text("SELECT version FROM schema_migrations"))}

        pending = [m for m in MIGRATIONS if m[0] not in applied]
        if not pending:
            logger.info("Database is up to date", version=max(applied, default=0))
            return

        logger.info("Running migrations", pending=len(pending))
        for version, name, apply in pending:
            with self.engine.begin() as conn:
                apply(conn)
                conn.execute(
                    text(
                        "INSERT INTO schema_migrations (version, name, applied_at) "
                        "VALUES (:version, :name, :applied_at)"
                    ),
                    {
                        "version": version,
                        "name": name,
                        "applied_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
            logger.info("Applied migration", version=version, name=name)

        logger.info("All migrations applied", total=len(applied) + len(pending))

    def _verify_database_integrity(self):
        """Verify database integrity and structure"""
        try:
            with self.engine.connect() as conn:
                if str(self.engine.url).startswith("sqlite"):
                    integrity_status = conn.execute(text("PRAGMA integrity_check")).scalar()
                    if integrity_status == "ok":
                        logger.debug("Database integrity check passed")
                    else:
                        logger.warning(f"Database integrity check returned: {integrity_status}")

                    tables_result = conn.execute(
                        text("SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'")
                    )
                    existing_tables = {row[0] for row in tables_result}
                    missing_tables = [t for t in CRITICAL_TABLES if t not in existing_tables]
                    if missing_tables:
                        logger.warning(f"Critical tables missing after migration: {missing_tables}")
        except Exception as e:
            # Log but don't fail initialization if integrity check fails
            logger.warning(f"Database integrity check encountered an issue: {e}")

    def get_session(self) -> Session:
        """Get database session"""
        if not self.engine:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return Session(self.engine, expire_on_commit=False)

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            with self.get_session() as session:
                session.exec(select(1)).first()
                return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self):
        """Close database connection"""
        if self.engine:
            logger.info("Closing database")
            self.engine.dispose()
            self.engine = None


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Per-connection SQLite settings; foreign_keys must be set on every connection"""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()
