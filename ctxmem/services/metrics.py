"""Compression metrics and analytics service."""

import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete, func, select

from ..config.models import MetricsConfig
from ..models.metric import CompressionMetric
from ..utils.logger import get_logger
from .storage import StorageService

logger = get_logger(__name__)

WINDOWS = {
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


class CompressionMetricsService:
    """Service for compression metrics.

    Provides:
    - Record one row per compress operation (best effort, never raises)
    - Aggregated savings over arbitrary time ranges
    - Session / weekly / monthly windows, per-day and per-strategy breakdowns
    """

    def __init__(
        self,
        storage: StorageService,
        config: MetricsConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize metrics service.

        Args:
            storage: Storage service instance
            config: Metrics configuration
            clock: Source of "now", injectable for tests
        """
        self._storage = storage
        self.config = config or MetricsConfig()
        self.clock = clock
        self.started_at = clock()

    async def record(
        self,
        context_id: str,
        original_tokens: int,
        compressed_tokens: int,
        ratio: float,
        algorithm: str,
        strategy: str,
        elapsed_ms: float = 0.0,
        session_id: str | None = None,
        project_key: str | None = None,
    ) -> bool:
        """Record a single compress operation.

        Returns:
            True if the row was written; failures are logged and swallowed
        """
        if not self.config.enabled:
            return False

        metric = CompressionMetric(
            id=str(uuid.uuid4()),
            context_id=context_id,
            session_id=session_id,
            project_key=project_key,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            ratio=ratio,
            elapsed_ms=elapsed_ms,
            algorithm=algorithm,
            strategy=strategy,
            timestamp=self.clock(),
        )
        try:
            async with self._storage.transaction("record_metric") as db:
                db.add(metric)
        except Exception as e:
            logger.warning(
                "Failed to record compression metric",
                extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            )
            return False

        logger.debug("Recorded compression metric", extra={"context_id": context_id, "ratio": ratio})
        return True

    def estimate_cost(self, tokens_saved: int) -> float:
        """Estimated money saved for a number of tokens."""
        if tokens_saved <= 0:
            return 0.0
        return round(tokens_saved / 1000 * self.config.cost_per_1k_tokens, 6)

    async def aggregate(
        self,
        project_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, Any]:
        """Get aggregated statistics with optional filters.

        Args:
            project_key: Filter by project
            since: Filter from this time (inclusive)
            until: Filter to this time (inclusive)

        Returns:
            Aggregated statistics dict; all zeros when nothing matches
        """
        query = select(
            func.count(CompressionMetric.id).label("operations"),
            func.sum(CompressionMetric.original_tokens).label("total_original_tokens"),
            func.sum(CompressionMetric.compressed_tokens).label("total_compressed_tokens"),
            func.avg(CompressionMetric.ratio).label("average_ratio"),
            func.avg(CompressionMetric.elapsed_ms).label("average_elapsed_ms"),
            func.max(CompressionMetric.elapsed_ms).label("max_elapsed_ms"),
        ).where(*self._filters(project_key, since, until))

        async with self._storage.session("metric_aggregate") as db:
            row = (await db.execute(query)).one()

        original = row.total_original_tokens or 0
        compressed = row.total_compressed_tokens or 0
        saved = original - compressed
        return {
            "operations": row.operations or 0,
            "total_original_tokens": original,
            "total_compressed_tokens": compressed,
            "tokens_saved": saved,
            "average_ratio": round(row.average_ratio or 0, 4),
            "average_elapsed_ms": round(row.average_elapsed_ms or 0, 2),
            "max_elapsed_ms": round(row.max_elapsed_ms or 0, 2),
            "estimated_cost_saved": self.estimate_cost(saved),
        }

    async def window_stats(self, project_key: str | None = None) -> dict[str, dict[str, Any]]:
        """Aggregates for the current session, the last 7 days and the last 30 days."""
        now = self.clock()
        if self.config.session_hours:
            session_start = now - timedelta(hours=self.config.session_hours)
        else:
            session_start = self.started_at

        stats = {"session": await self.aggregate(project_key, since=session_start, until=now)}
        for name, span in WINDOWS.items():
            stats[name] = await self.aggregate(project_key, since=now - span, until=now)
        return stats

    async def daily_stats(self, days: int = 7, project_key: str | None = None) -> list[dict[str, Any]]:
        """Get daily statistics for the past N days, newest first."""
        start_time = self.clock() - timedelta(days=days)
        day = func.date(CompressionMetric.timestamp)
        query = (
            select(
                day.label("date"),
                func.count(CompressionMetric.id).label("operations"),
                func.sum(CompressionMetric.original_tokens).label("total_original_tokens"),
                func.sum(CompressionMetric.compressed_tokens).label("total_compressed_tokens"),
                func.avg(CompressionMetric.ratio).label("average_ratio"),
            )
            .where(*self._filters(project_key, start_time, None))
            .group_by(day)
            .order_by(day.desc())
        )

        async with self._storage.session("metric_daily") as db:
            rows = (await db.execute(query)).all()

        stats = []
        for row in rows:
            original = row.total_original_tokens or 0
            compressed = row.total_compressed_tokens or 0
            stats.append({
                "date": row.date,
                "operations": row.operations or 0,
                "total_original_tokens": original,
                "tokens_saved": original - compressed,
                "average_ratio": round(row.average_ratio or 0, 4),
            })
        return stats

    async def stats_by_strategy(
        self,
        since: datetime | None = None,
        project_key: str | None = None,
    ) -> list[dict[str, Any]]:
        """Get statistics grouped by strategy and algorithm."""
        query = (
            select(
                CompressionMetric.strategy,
                CompressionMetric.algorithm,
                func.count(CompressionMetric.id).label("operations"),
                func.sum(CompressionMetric.original_tokens).label("total_original_tokens"),
                func.sum(CompressionMetric.compressed_tokens).label("total_compressed_tokens"),
                func.avg(CompressionMetric.ratio).label("average_ratio"),
                func.avg(CompressionMetric.elapsed_ms).label("average_elapsed_ms"),
            )
            .where(*self._filters(project_key, since, None))
            .group_by(CompressionMetric.strategy, CompressionMetric.algorithm)
            .order_by(CompressionMetric.strategy, CompressionMetric.algorithm)
        )

        async with self._storage.session("metric_by_strategy") as db:
            rows = (await db.execute(query)).all()

        stats = []
        for row in rows:
            original = row.total_original_tokens or 0
            compressed = row.total_compressed_tokens or 0
            stats.append({
                "strategy": row.strategy,
                "algorithm": row.algorithm,
                "operations": row.operations or 0,
                "tokens_saved": original - compressed,
                "average_ratio": round(row.average_ratio or 0, 4),
                "average_elapsed_ms": round(row.average_elapsed_ms or 0, 2),
            })
        return stats

    async def recent(self, limit: int = 10, project_key: str | None = None) -> list[dict[str, Any]]:
        """Most recent metric rows, newest first."""
        query = (
            select(CompressionMetric)
            .where(*self._filters(project_key, None, None))
            .order_by(CompressionMetric.timestamp.desc(), CompressionMetric.id)
            .limit(max(limit, 0))
        )
        async with self._storage.session("metric_recent") as db:
            rows = (await db.execute(query)).scalars().all()
            return [row.to_dict() for row in rows]

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete metric rows recorded before ``cutoff`` (retention cleanup)."""
        async with self._storage.transaction("purge_metrics") as db:
            result = await db.execute(delete(CompressionMetric).where(CompressionMetric.timestamp < cutoff))
            deleted = result.rowcount or 0

        logger.info("Old metrics purged", extra={"cutoff": cutoff.isoformat(), "deleted": deleted})
        return deleted

    @staticmethod
    def _filters(project_key: str | None, since: datetime | None, until: datetime | None) -> list:
        conditions = []
        if project_key:
            conditions.append(CompressionMetric.project_key == project_key)
        if since is not None:
            conditions.append(CompressionMetric.timestamp >= since)
        if until is not None:
            conditions.append(CompressionMetric.timestamp <= until)
        return conditions


class OperationTimer:
    """Context manager for measuring operation latency."""

    def __init__(self) -> None:
        self.start_time: float = 0
        self.elapsed_ms: float = 0.0

    def __enter__(self) -> "OperationTimer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed_ms = round((time.perf_counter() - self.start_time) * 1000, 3)
