"""Integration tests for the compress -> persist -> tiered read flow."""

from datetime import timedelta

import pytest

from ctxmem.config.models import Config, StorageConfig
from ctxmem.context.manager import ContextManager
from ctxmem.services.compression.strategies import normalize_whitespace
from ctxmem.utils.errors import StorageError, ValidationError

TOPICS = [
    "storage layer", "tier loader", "compression engine", "metrics service", "import pipeline",
    "export format", "project aggregate", "access statistics", "retention window", "decision log",
]


def long_text(words: int = 10000) -> str:
    """Session transcript with recurring lines, roughly ``words`` words long."""
    sentences = [
        f"While reviewing the {topic} we agreed that variant {variant} keeps the behaviour "
        f"predictable for every caller and leaves the public interface exactly as documented."
        for topic in TOPICS
        for variant in range(4)
    ]
    lines = []
    count = 0
    index = 0
    while count < words:
        sentence = sentences[index % len(sentences)]
        lines.append(sentence)
        if index % 8 == 7:
            lines.append("")
        count += len(sentence.split())
        index += 1
    return "\n".join(lines)


class TestCompressAndRead:
    """Compress, then read back through the tiers."""

    @pytest.mark.asyncio
    async def test_compress_then_get_reports_same_ratio(self, manager):
        text = long_text()
        summary = await manager.compress("id-1", "proj-A", text, "balanced")

        assert summary.original_tokens > 9000
        assert summary.compressed_tokens < summary.original_tokens / 2
        assert summary.algorithm == "dedup"
        assert summary.passthrough is False

        record = await manager.get("id-1")
        assert record.compression_ratio == summary.compression_ratio
        assert record.original_tokens == summary.original_tokens
        assert record.access_count == 1

        assert await manager.get_content("id-1") == normalize_whitespace(text)

    @pytest.mark.asyncio
    async def test_compressed_size_within_slack_or_passthrough(self, manager):
        for index, strategy in enumerate(("conservative", "balanced", "aggressive")):
            summary = await manager.compress(f"ctx-{index}", "proj-A", long_text(800), strategy)
            record = await manager.get(f"ctx-{index}")
            assert record.compressed_tokens <= record.original_tokens * 1.05 or (
                record.algorithm == "none" and record.compression_ratio == 0
            )
            assert summary.strategy == strategy

    @pytest.mark.asyncio
    async def test_aggressive_keeps_must_keep_segments(self, manager):
        text = long_text(2000) + "\nAPI key rotation happens every 90 days\n" + long_text(500)
        await manager.compress(
            "ctx-1", "proj-A", text, "aggressive", must_keep=["API key rotation happens every 90 days"]
        )
        assert "API key rotation happens every 90 days" in await manager.get_content("ctx-1")

    @pytest.mark.asyncio
    async def test_compress_messages(self, manager):
        messages = [
            {"role": "user", "content": "Please fix the failing import test"},
            {"role": "assistant", "content": "Fixed: the schema version was missing"},
        ]
        summary = await manager.compress_messages("chat-1", "proj-A", messages, "conservative")
        assert summary.original_tokens > 0

        record = await manager.get("chat-1")
        assert record.metadata["message_count"] == 2
        assert "assistant: Fixed" in await manager.get_content("chat-1")

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, manager):
        assert await manager.get("missing") is None
        assert await manager.get_content("missing") is None

    @pytest.mark.asyncio
    async def test_unknown_strategy_persists_nothing(self, manager):
        with pytest.raises(ValidationError):
            await manager.compress("ctx-1", "proj-A", "text", "extreme")
        assert await manager.store.get("ctx-1") is None

    @pytest.mark.asyncio
    async def test_idempotent_compress(self, manager):
        await manager.compress("ctx-1", "proj-A", "same content")
        await manager.compress("ctx-1", "proj-A", "same content")

        records = await manager.list_by_project("proj-A")
        assert [r.id for r in records] == ["ctx-1"]
        assert (await manager.get_project("proj-A")).context_count == 1
        assert len(await manager.list_hot()) == 1


class TestTiers:
    """L0 capacity, promotion and migration through the facade."""

    @pytest.mark.asyncio
    async def test_l0_capacity_and_warm_listing(self, manager, clock):
        for i in range(150):
            await manager.compress(f"ctx-{i:03d}", "proj-A", f"context body number {i}")
            clock.advance(seconds=1)

        hot_ids = {r.id for r in await manager.list_hot()}
        assert len(hot_ids) <= 100
        oldest = {f"ctx-{i:03d}" for i in range(50)}
        assert hot_ids.isdisjoint(oldest)

        warm_ids = {r.id for r in await manager.list_warm(limit=200)}
        assert warm_ids == oldest

        record = await manager.get("ctx-000")
        assert record is not None
        assert "ctx-000" in {r.id for r in await manager.list_hot()}
        assert "ctx-050" not in {r.id for r in await manager.list_hot()}

    @pytest.mark.asyncio
    async def test_lru_evicts_least_recently_accessed(self, small_manager, clock):
        for name in ("a", "b", "c"):
            await small_manager.compress(name, "proj-A", f"body {name}")
            clock.advance(seconds=1)
        await small_manager.get("a")
        clock.advance(seconds=1)
        await small_manager.compress("d", "proj-A", "body d")

        assert {r.id for r in await small_manager.list_hot()} == {"a", "c", "d"}

    @pytest.mark.asyncio
    async def test_migration_promotes_old_popular_record(self, manager, clock, make_record):
        await manager.store.save(make_record("ctx-1", at=clock() - timedelta(days=10), access_count=15))

        result = await manager.migrate_tiers()
        assert result.promoted == 1
        assert "ctx-1" in {r.id for r in await manager.list_hot()}

        again = await manager.migrate_tiers()
        assert (again.promoted, again.demoted) == (0, 0)

    @pytest.mark.asyncio
    async def test_hot_and_cold_never_overlap(self, manager, clock, make_record):
        await manager.store.save(make_record("popular", at=clock() - timedelta(days=10), access_count=15))
        await manager.store.save(make_record("cold", at=clock() - timedelta(days=10)))
        await manager.migrate_tiers()

        hot = {r.id for r in await manager.list_hot()}
        cold = {r.id for r in await manager.list_cold()}
        assert hot == {"popular"}
        assert cold == {"cold"}
        assert hot.isdisjoint(cold)

    @pytest.mark.asyncio
    async def test_demotion_after_hot_threshold(self, manager, clock):
        await manager.compress("ctx-1", "proj-A", "short lived")
        clock.advance(hours=25)

        result = await manager.migrate_tiers()
        assert result.demoted == 1
        assert await manager.list_hot() == []
        assert [r.id for r in await manager.list_warm()] == ["ctx-1"]


class TestRetentionAndStats:
    """Cleanup, stats and degraded-mode behaviour."""

    @pytest.mark.asyncio
    async def test_cleanup_deletes_only_old_records(self, manager, clock):
        start = clock()
        clock.now = start - timedelta(days=45)
        await manager.compress("old", "proj-A", "forty five days old")
        clock.now = start - timedelta(days=5)
        await manager.compress("recent", "proj-A", "five days old")
        clock.now = start

        assert await manager.cleanup(30) == 1
        assert await manager.get("old") is None
        assert await manager.get("recent") is not None
        assert "old" not in {r.id for r in await manager.list_hot()}
        assert (await manager.get_project("proj-A")).context_count == 1
        assert (await manager.metrics.aggregate())["operations"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_rejects_negative_window(self, manager):
        with pytest.raises(ValidationError):
            await manager.cleanup(-1)

    @pytest.mark.asyncio
    async def test_stats_on_empty_store(self, manager):
        stats = await manager.get_stats()
        assert stats["total_contexts"] == 0
        assert stats["average_ratio"] == 0
        assert stats["tokens_saved"] == 0
        assert stats["estimated_cost_saved"] == 0.0
        assert stats["tiers"]["l0"]["entries"] == 0
        assert stats["metrics"]["session"]["operations"] == 0
        assert stats["metrics"]["monthly"]["average_ratio"] == 0

    @pytest.mark.asyncio
    async def test_stats_after_compress(self, manager):
        await manager.compress("ctx-1", "proj-A", long_text(1000))
        stats = await manager.get_stats("proj-A")
        assert stats["total_contexts"] == 1
        assert stats["tokens_saved"] > 0
        assert stats["metrics"]["session"]["operations"] == 1
        assert stats["metrics"]["weekly"]["tokens_saved"] == stats["tokens_saved"]

    @pytest.mark.asyncio
    async def test_metric_failure_does_not_fail_compress(self, manager, monkeypatch):
        monkeypatch.setattr(manager.metrics, "_storage", None)
        summary = await manager.compress("ctx-1", "proj-A", "still saved")
        assert summary.id == "ctx-1"
        assert await manager.store.get("ctx-1") is not None

    @pytest.mark.asyncio
    async def test_storage_error_marks_degraded(self, manager, monkeypatch):
        async def unavailable(context_id):
            raise StorageError("database is locked", operation="get_context")

        monkeypatch.setattr(manager.store, "get", unavailable)
        with pytest.raises(StorageError):
            await manager.get("ctx-1")
        assert manager.degraded is True

        monkeypatch.undo()
        health = await manager.health()
        assert health["healthy"] is True
        assert health["degraded"] is False

    @pytest.mark.asyncio
    async def test_purge_project(self, manager):
        await manager.compress("a1", "proj-A", "alpha")
        await manager.compress("b1", "proj-B", "beta")

        assert await manager.purge_project("proj-A") == 1
        assert await manager.get_project("proj-A") is None
        assert {r.id for r in await manager.list_hot()} == {"b1"}


class TestLifecycle:
    """File-backed store across restarts."""

    @pytest.mark.asyncio
    async def test_reopen_keeps_records_and_warms_l0(self, tmp_path, clock, token_counter):
        config = Config(storage=StorageConfig(path=str(tmp_path / "contexts.db")))

        async with ContextManager.open(config, token_counter=token_counter, clock=clock) as first:
            await first.compress("ctx-1", "proj-A", "survives a restart")
            clock.advance(days=3)
            await first.compress("ctx-2", "proj-A", "recent enough to be hot")

        async with ContextManager.open(config, token_counter=token_counter, clock=clock) as second:
            assert {r.id for r in await second.list_hot()} == {"ctx-2"}
            assert await second.get_content("ctx-1") == "survives a restart"
            health = await second.health()
            assert health["healthy"] is True
            assert health["journal_mode"] == "wal"


class TestExtras:
    """Search, estimates and decisions through the facade."""

    @pytest.mark.asyncio
    async def test_search(self, manager):
        await manager.compress("ctx-1", "proj-A", "We chose SQLite with WAL", metadata={"topic": "storage"})
        await manager.compress("ctx-2", "proj-B", "Unrelated notes")

        assert [r.id for r in await manager.search("sqlite")] == ["ctx-1"]
        assert [r.id for r in await manager.search("storage", project_key="proj-A")] == ["ctx-1"]

    @pytest.mark.asyncio
    async def test_estimate_savings_persists_nothing(self, manager):
        estimate = await manager.estimate_savings(long_text(1000), "balanced")
        assert estimate["tokens_saved"] > 0
        assert estimate["estimated_cost_saved"] > 0
        assert (await manager.get_stats())["total_contexts"] == 0

    @pytest.mark.asyncio
    async def test_best_strategy(self, manager):
        assert await manager.best_strategy(long_text(1000)) in {"conservative", "balanced", "aggressive"}

    @pytest.mark.asyncio
    async def test_decisions(self, manager):
        decision = await manager.record_decision("Adopt WAL mode", reasoning="Readers never block")
        assert decision.session_id == "test-session"

        await manager.set_decision_outcome(decision.id, "adopted")
        listed = await manager.list_decisions(session_id="test-session")
        assert [d.outcome for d in listed] == ["adopted"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
