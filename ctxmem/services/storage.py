"""Storage service: the process-wide handle on the embedded datastore."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ..config.loader import default_database_path
from ..config.models import StorageConfig
from ..models.base import Base
from ..utils.errors import ErrorCode, StorageError, ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

MEMORY_URL = "sqlite+aiosqlite:///:memory:"

_CORRUPTION_MARKERS = ("malformed", "not a database", "corrupt")
_CHECKPOINT_MODES = ("PASSIVE", "FULL", "RESTART", "TRUNCATE")


class StorageService:
    """Async SQLite access with SQLAlchemy.

    One instance is created per process and handed to every component that
    needs the datastore. The file runs in WAL mode so readers proceed while a
    write is in flight; writes serialise on an in-process lock and each runs
    in a single transaction. An in-memory database lives on one shared
    connection, so reads take the same lock there.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        wal: bool = True,
        busy_timeout_ms: int = 5000,
        echo: bool = False,
    ) -> None:
        """Initialize storage service.

        Args:
            database_url: SQLAlchemy URL (defaults to the per-user database file)
            wal: Enable write-ahead journal mode for file databases
            busy_timeout_ms: How long SQLite waits on a locked database
            echo: Echo SQL statements
        """
        if database_url is None:
            database_url = f"sqlite+aiosqlite:///{default_database_path()}"

        url = make_url(database_url)
        self.in_memory = url.database in (None, "", ":memory:")
        self.database_path: Path | None = None

        engine_kwargs: dict[str, Any] = {}
        if self.in_memory:
            engine_kwargs["poolclass"] = StaticPool
        else:
            self.database_path = Path(url.database).expanduser()
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=str(self.database_path))

        self.database_url = url.render_as_string(hide_password=False)
        self._wal = wal and not self.in_memory
        self._busy_timeout_ms = busy_timeout_ms

        self.engine = create_async_engine(
            self.database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            **engine_kwargs,
        )
        event.listen(self.engine.sync_engine, "connect", self._configure_connection)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._write_lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    def from_config(cls, config: StorageConfig) -> "StorageService":
        """Build the handle described by a storage config section."""
        if config.path == ":memory:":
            database_url = MEMORY_URL
        else:
            path = Path(config.path).expanduser() if config.path else default_database_path()
            database_url = f"sqlite+aiosqlite:///{path}"
        return cls(
            database_url,
            wal=config.wal,
            busy_timeout_ms=config.busy_timeout_ms,
            echo=config.echo,
        )

    def _configure_connection(self, dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        if self._wal:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise self._storage_error(e, "initialize") from e
        self._initialized = True
        logger.info(
            "Storage initialized",
            extra={
                "database": str(self.database_path) if self.database_path else ":memory:",
                "wal": self._wal,
            },
        )

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()
        self._initialized = False

    @asynccontextmanager
    async def session(self, operation: str = "read") -> AsyncGenerator[AsyncSession, None]:
        """Get a session for reads.

        Usage:
            async with storage.session() as db:
                result = await db.execute(...)
        """
        if self.in_memory:
            async with self._write_lock:
                async with self._open_session(operation) as session:
                    yield session
        else:
            async with self._open_session(operation) as session:
                yield session

    @asynccontextmanager
    async def transaction(self, operation: str = "write") -> AsyncGenerator[AsyncSession, None]:
        """Get a session for writes.

        Holds the write lock for the whole block; everything done in the block
        commits together or not at all. Must not be nested with another
        ``session``/``transaction`` on the same service.
        """
        async with self._write_lock:
            async with self._open_session(operation) as session:
                yield session

    @asynccontextmanager
    async def _open_session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self.async_session() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as e:
            raise self._storage_error(e, operation) from e

    def _storage_error(self, exc: Exception, operation: str) -> StorageError:
        message = str(exc)
        code = ErrorCode.STORAGE_UNAVAILABLE
        if any(marker in message.lower() for marker in _CORRUPTION_MARKERS):
            code = ErrorCode.STORAGE_CORRUPT
        logger.error(
            "Storage operation failed",
            extra={
                "operation": operation,
                "error": message,
                "error_type": type(exc).__name__,
                "code": code.value,
            },
        )
        return StorageError(f"Storage operation '{operation}' failed: {message}", operation=operation, code=code)

    async def health_check(self) -> bool:
        """Check database connectivity.

        Returns:
            True if database is accessible
        """
        try:
            async with self.session("health_check") as db:
                await db.execute(text("SELECT 1"))
                return True
        except StorageError:
            return False

    async def integrity_report(self) -> dict[str, Any]:
        """Run SQLite's integrity check and collect page statistics."""
        async with self.session("integrity_check") as db:
            integrity = (await db.execute(text("PRAGMA integrity_check"))).scalar()
            journal_mode = (await db.execute(text("PRAGMA journal_mode"))).scalar()
            page_count = (await db.execute(text("PRAGMA page_count"))).scalar() or 0
            page_size = (await db.execute(text("PRAGMA page_size"))).scalar() or 0
            freelist_count = (await db.execute(text("PRAGMA freelist_count"))).scalar() or 0

        return {
            "integrity": integrity,
            "healthy": integrity == "ok",
            "journal_mode": journal_mode,
            "page_count": page_count,
            "page_size": page_size,
            "freelist_count": freelist_count,
            "utilization_percent": (
                round((page_count - freelist_count) / page_count * 100, 2) if page_count else 100.0
            ),
            "size_bytes": self.database_size(),
        }

    async def vacuum(self) -> None:
        """Reclaim free pages. Runs outside any transaction."""
        async with self._write_lock:
            try:
                async with self.engine.connect() as conn:
                    conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                    await conn.exec_driver_sql("VACUUM")
            except SQLAlchemyError as e:
                raise self._storage_error(e, "vacuum") from e
        logger.info("Database vacuumed", extra={"size_bytes": self.database_size()})

    async def checkpoint(self, mode: str = "RESTART") -> dict[str, Any]:
        """Copy WAL frames back into the main database file.

        Args:
            mode: PASSIVE, FULL, RESTART or TRUNCATE

        Returns:
            ``success`` (no reader blocked the checkpoint), ``wal_frames``
            and ``checkpointed`` frame counts
        """
        mode = mode.upper()
        if mode not in _CHECKPOINT_MODES:
            raise ValidationError(f"Unknown checkpoint mode: {mode}", field="mode", value=mode)

        async with self._write_lock:
            try:
                async with self.engine.connect() as conn:
                    conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                    busy, wal_frames, checkpointed = (
                        await conn.exec_driver_sql(f"PRAGMA wal_checkpoint({mode})")
                    ).one()
            except SQLAlchemyError as e:
                raise self._storage_error(e, "checkpoint") from e

        result = {"success": busy == 0, "wal_frames": wal_frames, "checkpointed": checkpointed}
        logger.info("WAL checkpoint completed", extra={"mode": mode, **result})
        return result

    async def backup(self, destination: Path) -> int:
        """Write a consistent copy of the database to ``destination``.

        Returns:
            Size of the backup file in bytes

        Raises:
            ValidationError: If the destination already exists
        """
        destination = Path(destination).expanduser()
        if destination.exists():
            raise ValidationError(
                f"Backup destination already exists: {destination}", field="destination", value=str(destination)
            )
        destination.parent.mkdir(parents=True, exist_ok=True)

        if self._wal:
            await self.checkpoint("FULL")
        async with self._write_lock:
            try:
                async with self.engine.connect() as conn:
                    conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                    await conn.exec_driver_sql("VACUUM INTO ?", (str(destination),))
            except SQLAlchemyError as e:
                raise self._storage_error(e, "backup") from e

        size = destination.stat().st_size
        logger.info("Database backed up", extra={"destination": str(destination), "size_bytes": size})
        return size

    def database_size(self) -> int:
        """Size of the database file plus its WAL, in bytes (0 in memory)."""
        if self.database_path is None:
            return 0
        total = 0
        for suffix in ("", "-wal"):
            candidate = Path(f"{self.database_path}{suffix}")
            if candidate.exists():
                total += candidate.stat().st_size
        return total


async def init_storage(config: StorageConfig | None = None) -> StorageService:
    """Create the storage handle for this process and initialize its schema.

    Returns:
        Initialized StorageService
    """
    service = StorageService.from_config(config or StorageConfig())
    await service.initialize()
    return service
