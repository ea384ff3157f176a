"""Context manager: the external interface of the context memory subsystem."""

import re
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from ..config.models import Config
from ..services.compression import CompressionEngine, CompressionOutcome, TokenCounter, render_messages
from ..services.context_store import ContextStore
from ..services.decision_log import DecisionLog
from ..services.metrics import CompressionMetricsService, OperationTimer
from ..services.storage import StorageService
from ..utils.errors import StorageError, ValidationError
from ..utils.logger import bind_log_context, get_logger, log_execution, setup_logging
from .models import (
    CompressionStrategy,
    CompressionSummary,
    ContextRecord,
    DecisionRecord,
    ImportSummary,
    MigrationResult,
    ProjectRecord,
)
from .tier_loader import HierarchicalTierLoader

logger = get_logger(__name__)


class ContextManager:
    """Compresses, persists and serves conversational context.

    Wires together:
    - CompressionEngine: strategy selection and token accounting
    - ContextStore: durable records and project aggregates
    - HierarchicalTierLoader: L0 cache in front of warm/cold store queries
    - CompressionMetricsService: per-operation metrics and savings windows
    - DecisionLog: optional decision audit trail

    The storage handle is created once per process and passed in. Any
    storage failure marks the manager degraded and is re-raised.
    """

    def __init__(
        self,
        storage: StorageService,
        config: Config | None = None,
        *,
        token_counter: TokenCounter | None = None,
        clock: Callable[[], datetime] = datetime.now,
        session_id: str | None = None,
    ) -> None:
        """Initialize context manager.

        Args:
            storage: Process-wide storage handle
            config: Full configuration (defaults when omitted)
            token_counter: Shared token counter
            clock: Source of "now", injectable for tests
            session_id: Session the metrics and decisions belong to
        """
        self.config = config or Config()
        self.storage = storage
        self.clock = clock
        self.session_id = session_id or str(uuid.uuid4())

        self.token_counter = token_counter or TokenCounter(self.config.compression.encoding)
        self.engine = CompressionEngine(self.token_counter, self.config.compression)
        self.store = ContextStore(storage, clock=clock)
        self.tiers = HierarchicalTierLoader(self.store, self.config.tiers, clock=clock)
        self.metrics = CompressionMetricsService(storage, self.config.metrics, clock=clock)
        self.decisions = DecisionLog(storage, clock=clock)

        self._degraded = False
        self._last_error: str | None = None

    @classmethod
    def open(
        cls,
        config: Config | None = None,
        database_url: str | None = None,
        configure_logging: bool = False,
        **kwargs: Any,
    ) -> "ContextManager":
        """Build the storage handle from config and wrap it in a manager.

        Call :meth:`initialize` (or use ``async with``) before first use.
        With ``configure_logging`` the process-wide logging is set up from
        ``config.logging`` as well.
        """
        config = config or Config()
        if configure_logging:
            setup_logging(config.logging)
        if database_url is not None:
            storage = StorageService(
                database_url,
                wal=config.storage.wal,
                busy_timeout_ms=config.storage.busy_timeout_ms,
                echo=config.storage.echo,
            )
        else:
            storage = StorageService.from_config(config.storage)
        return cls(storage, config, **kwargs)

    async def initialize(self, warm_up: bool = True) -> None:
        """Create the schema if needed and pre-load hot records into L0."""
        bind_log_context(session_id=self.session_id)
        await self._guard(self.storage.initialize())
        if warm_up:
            await self._guard(self.tiers.warm_up())
        logger.info("Context manager initialized", extra={"session_id": self.session_id})

    async def close(self) -> None:
        self.tiers.clear()
        await self.storage.close()

    async def __aenter__(self) -> "ContextManager":
        await self.initialize()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def degraded(self) -> bool:
        return self._degraded

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    async def compress(
        self,
        context_id: str,
        project_key: str,
        text: str | bytes,
        strategy: str | CompressionStrategy | None = None,
        metadata: dict[str, Any] | None = None,
        must_keep: list[str] | None = None,
        project_path: str | None = None,
        project_name: str | None = None,
    ) -> CompressionSummary:
        """Compress text and persist it before returning.

        Args:
            context_id: Unique id; an existing record with this id is replaced
            project_key: Project the context belongs to
            text: Raw context text
            strategy: conservative / balanced / aggressive (None for the default)
            metadata: Caller annotations stored with the record
            must_keep: Segments a lossy strategy has to preserve verbatim
            project_path: Path recorded on the project the first time it is seen
            project_name: Display name for the project

        Returns:
            Compression summary
        """
        record, outcome, elapsed_ms = self._build_record(
            context_id, project_key, text, strategy, metadata, must_keep
        )
        stored = await self._guard(self.store.save(record, project_path, project_name))
        self.tiers.admit(stored)
        return await self._finish_compress(outcome, stored, elapsed_ms)

    async def compress_batch(
        self,
        items: list[dict[str, Any]],
        strategy: str | CompressionStrategy | None = None,
    ) -> list[CompressionSummary]:
        """Compress several contexts and persist them in one transaction.

        Each item carries ``id``, ``project_key`` and ``text``, optionally
        ``strategy``, ``metadata`` and ``must_keep``. Every item is validated
        and compressed before anything is written, so a bad item leaves the
        store untouched.
        """
        built = []
        for index, item in enumerate(items):
            try:
                context_id, project_key, text = item["id"], item["project_key"], item["text"]
            except KeyError as e:
                raise ValidationError(
                    f"Batch item {index} is missing {e.args[0]!r}", field=str(e.args[0]), value=index
                ) from e
            built.append(
                self._build_record(
                    context_id,
                    project_key,
                    text,
                    item.get("strategy", strategy),
                    item.get("metadata"),
                    item.get("must_keep"),
                )
            )

        stored = await self._guard(self.store.save_many([record for record, _, _ in built]))
        summaries = []
        for record, (_, outcome, elapsed_ms) in zip(stored, built):
            self.tiers.admit(record)
            summaries.append(await self._finish_compress(outcome, record, elapsed_ms))
        logger.info("Batch compressed", extra={"count": len(summaries)})
        return summaries

    async def decompress_batch(self, context_ids: list[str]) -> dict[str, str | None]:
        """Decompressed text per id; unknown ids map to None."""
        return {context_id: await self.get_content(context_id) for context_id in context_ids}

    def _build_record(
        self,
        context_id: str,
        project_key: str,
        text: str | bytes,
        strategy: str | CompressionStrategy | None,
        metadata: dict[str, Any] | None,
        must_keep: list[str] | None,
    ) -> tuple[ContextRecord, CompressionOutcome, float]:
        if not context_id:
            raise ValidationError("context_id must not be empty", field="context_id")
        if not project_key:
            raise ValidationError("project_key must not be empty", field="project_key")

        with OperationTimer() as timer:
            outcome = self.engine.compress(text, strategy, must_keep=must_keep)

        now = self.clock()
        record = ContextRecord(
            id=context_id,
            project_key=project_key,
            compressed_payload=outcome.payload,
            algorithm=outcome.algorithm,
            strategy=outcome.strategy,
            original_tokens=outcome.original_tokens,
            compressed_tokens=outcome.compressed_tokens,
            compression_ratio=outcome.compression_ratio,
            metadata=metadata or {},
            created_at=now,
            last_accessed_at=now,
            access_count=0,
        )
        return record, outcome, timer.elapsed_ms

    async def _finish_compress(
        self, outcome: CompressionOutcome, record: ContextRecord, elapsed_ms: float
    ) -> CompressionSummary:
        await self.metrics.record(
            context_id=record.id,
            original_tokens=outcome.original_tokens,
            compressed_tokens=outcome.compressed_tokens,
            ratio=outcome.compression_ratio,
            algorithm=outcome.algorithm,
            strategy=outcome.strategy,
            elapsed_ms=elapsed_ms,
            session_id=self.session_id,
            project_key=record.project_key,
        )

        logger.info(
            "Context compressed",
            extra={
                "context_id": record.id,
                "project_key": record.project_key,
                "strategy": outcome.strategy,
                "algorithm": outcome.algorithm,
                "original_tokens": outcome.original_tokens,
                "compressed_tokens": outcome.compressed_tokens,
                "ratio": outcome.compression_ratio,
            },
        )
        return CompressionSummary(
            id=record.id,
            project_key=record.project_key,
            algorithm=outcome.algorithm,
            strategy=outcome.strategy,
            original_tokens=outcome.original_tokens,
            compressed_tokens=outcome.compressed_tokens,
            compression_ratio=outcome.compression_ratio,
            tokens_saved=outcome.tokens_saved,
            elapsed_ms=elapsed_ms,
            passthrough=outcome.passthrough,
        )

    async def compress_messages(
        self,
        context_id: str,
        project_key: str,
        messages: list[dict],
        strategy: str | CompressionStrategy | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> CompressionSummary:
        """Compress a chat history rendered as ``role: content`` lines."""
        metadata = {"message_count": len(messages), **(metadata or {})}
        return await self.compress(
            context_id,
            project_key,
            render_messages(messages),
            strategy,
            metadata=metadata,
            **kwargs,
        )

    async def estimate_savings(self, text: str, strategy: str | CompressionStrategy | None = None) -> dict[str, Any]:
        """What compressing ``text`` would save, without persisting anything."""
        outcome = self.engine.estimate(text, strategy)
        return {
            "strategy": outcome.strategy,
            "algorithm": outcome.algorithm,
            "original_tokens": outcome.original_tokens,
            "compressed_tokens": outcome.compressed_tokens,
            "compression_ratio": outcome.compression_ratio,
            "tokens_saved": outcome.tokens_saved,
            "estimated_cost_saved": self.metrics.estimate_cost(outcome.tokens_saved),
        }

    async def best_strategy(self, text: str) -> str:
        """Strategy with the highest ratio for ``text``."""
        return self.engine.best_strategy(text).strategy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, context_id: str) -> ContextRecord | None:
        """Get a record through the tiers; None if it does not exist."""
        return await self._guard(self.tiers.get(context_id))

    async def get_content(self, context_id: str) -> str | None:
        """Decompressed text of a record; None if it does not exist."""
        record = await self.get(context_id)
        if record is None:
            return None
        return self.engine.decompress(record.compressed_payload, record.algorithm)

    async def list_hot(self, project_key: str | None = None) -> list[ContextRecord]:
        """L0 contents, most recently used first."""
        return self.tiers.list_hot(project_key)

    async def list_warm(self, limit: int = 50, project_key: str | None = None, offset: int = 0) -> list[ContextRecord]:
        return await self._guard(self.tiers.list_warm(limit, project_key, offset))

    async def list_cold(self, offset: int = 0, limit: int = 50, project_key: str | None = None) -> list[ContextRecord]:
        return await self._guard(self.tiers.lazy_cold_contexts(offset, limit, project_key))

    async def list_by_project(self, project_key: str, limit: int = 100, offset: int = 0) -> list[ContextRecord]:
        """Page through a project's records without touching access statistics."""
        return await self._guard(self.store.list_by_project(project_key, limit, offset))

    async def search(self, query: str, project_key: str | None = None, limit: int = 20) -> list[ContextRecord]:
        return await self._guard(self.store.search(query, project_key, limit))

    async def get_project(self, project_key: str) -> ProjectRecord | None:
        return await self._guard(self.store.get_project(project_key))

    async def list_projects(self) -> list[ProjectRecord]:
        return await self._guard(self.store.list_projects())

    @log_execution
    async def migrate_tiers(self) -> MigrationResult:
        return await self._guard(self.tiers.migrate_tiers())

    async def get_stats(self, project_key: str | None = None) -> dict[str, Any]:
        """Store totals, tier statistics and metric windows. Zero-safe."""
        store_stats = await self._guard(self.store.get_stats(project_key))
        tier_stats = await self._guard(self.tiers.get_stats(project_key))
        windows = await self._guard(self.metrics.window_stats(project_key))
        return {
            **store_stats,
            "estimated_cost_saved": self.metrics.estimate_cost(store_stats["tokens_saved"]),
            "tiers": tier_stats,
            "metrics": windows,
            "session_id": self.session_id,
            "degraded": self._degraded,
        }

    async def recent_metrics(self, limit: int = 10, project_key: str | None = None) -> list[dict[str, Any]]:
        """Latest compression metric rows, newest first."""
        return await self._guard(self.metrics.recent(limit, project_key))

    async def daily_stats(self, days: int = 7, project_key: str | None = None) -> list[dict[str, Any]]:
        return await self._guard(self.metrics.daily_stats(days, project_key))

    async def stats_by_strategy(
        self,
        since: datetime | None = None,
        project_key: str | None = None,
    ) -> list[dict[str, Any]]:
        return await self._guard(self.metrics.stats_by_strategy(since, project_key))

    # ------------------------------------------------------------------
    # Export / import / retention
    # ------------------------------------------------------------------

    async def export_project(self, project_key: str) -> str:
        return await self._guard(self.store.export_project(project_key))

    async def import_project(self, payload: str | bytes | dict[str, Any]) -> ImportSummary:
        return await self.import_all(payload)

    async def export_all(self) -> str:
        return await self._guard(self.store.export_all())

    async def import_all(self, payload: str | bytes | dict[str, Any]) -> ImportSummary:
        """Import an export document; L0 drops cached records of the touched projects."""
        summary = await self._guard(self.store.import_all(payload))
        for project_key in summary.projects:
            self.tiers.invalidate_project(project_key)
        return summary

    @log_execution
    async def cleanup(self, older_than_days: float) -> int:
        """Delete contexts created more than ``older_than_days`` ago.

        Metric rows from the same window are purged too. Irreversible.

        Returns:
            Number of contexts deleted
        """
        if not older_than_days >= 0:
            raise ValidationError(
                "older_than_days must be a non-negative number", field="older_than_days", value=older_than_days
            )

        try:
            cutoff = self.clock() - timedelta(days=older_than_days)
        except OverflowError:
            # Window reaches past the earliest representable date.
            cutoff = datetime.min
        deleted = await self._guard(self.store.delete_older_than(cutoff))
        self.tiers.invalidate_older_than(cutoff)
        purged_metrics = await self._guard(self.metrics.purge_older_than(cutoff))

        logger.info(
            "Cleanup completed",
            extra={
                "older_than_days": older_than_days,
                "contexts_deleted": deleted,
                "metrics_deleted": purged_metrics,
            },
        )
        return deleted

    async def purge_project(self, project_key: str) -> int:
        """Administrative delete of a project and all its contexts."""
        deleted = await self._guard(self.store.purge_project(project_key))
        self.tiers.invalidate_project(project_key)
        return deleted

    async def delete(self, context_id: str) -> bool:
        deleted = await self._guard(self.store.delete(context_id))
        self.tiers.invalidate(context_id)
        return deleted

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def record_decision(
        self,
        decision: str,
        reasoning: str = "",
        context: str = "",
        task_id: str | None = None,
    ) -> DecisionRecord:
        return await self._guard(
            self.decisions.record(self.session_id, decision, reasoning, context, task_id)
        )

    async def set_decision_outcome(self, decision_id: str, outcome: str) -> DecisionRecord | None:
        return await self._guard(self.decisions.set_outcome(decision_id, outcome))

    async def list_decisions(
        self,
        task_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[DecisionRecord]:
        return await self._guard(self.decisions.list_decisions(session_id, task_id, limit))

    # ------------------------------------------------------------------
    # Health and maintenance
    # ------------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        """Integrity, journal mode and size of the datastore."""
        try:
            report = await self.storage.integrity_report()
        except StorageError as e:
            self._mark_degraded(e)
            return {
                "healthy": False,
                "degraded": True,
                "error": e.to_dict()["error"],
            }

        if report["healthy"] and self._degraded:
            logger.info("Storage recovered")
            self._degraded = False
            self._last_error = None
        return {
            **report,
            "degraded": self._degraded,
            "last_error": self._last_error,
            "l0_entries": len(self.tiers.cache),
        }

    async def checkpoint(self, mode: str = "RESTART") -> dict[str, Any]:
        """Fold the write-ahead log back into the database file."""
        return await self._guard(self.storage.checkpoint(mode))

    async def vacuum(self) -> dict[str, Any]:
        """Reclaim free pages; returns the database size before and after."""
        before = self.storage.database_size()
        await self._guard(self.storage.vacuum())
        return {"size_before": before, "size_after": self.storage.database_size()}

    async def backup(self, destination: str | Path | None = None, label: str | None = None) -> dict[str, Any]:
        """Copy the database to a new file.

        Without ``destination`` the copy goes to a ``backups`` directory next
        to the database file, named ``contexts-<timestamp>[-label].db``.
        An in-memory database needs an explicit destination.
        """
        if destination is None:
            if self.storage.database_path is None:
                raise ValidationError("An in-memory database needs a backup destination", field="destination")
            stamp = self.clock().strftime("%Y%m%dT%H%M%S")
            suffix = "-" + re.sub(r"[^A-Za-z0-9_.-]+", "-", label) if label else ""
            destination = self.storage.database_path.parent / "backups" / f"contexts-{stamp}{suffix}.db"

        destination = Path(destination)
        size = await self._guard(self.storage.backup(destination))
        stats = await self._guard(self.store.get_stats())
        return {
            "path": str(destination),
            "size_bytes": size,
            "contexts": stats["total_contexts"],
            "projects": len(await self._guard(self.store.list_projects())),
        }

    async def _guard(self, awaitable: Any) -> Any:
        try:
            return await awaitable
        except StorageError as e:
            self._mark_degraded(e)
            raise

    def _mark_degraded(self, error: StorageError) -> None:
        if not self._degraded:
            logger.error(
                "Context memory degraded",
                extra={"error": error.message, "code": error.code.value},
            )
        self._degraded = True
        self._last_error = error.message
