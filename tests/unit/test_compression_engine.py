"""Unit tests for CompressionEngine."""

import pytest

from ctxmem.config.models import CompressionConfig
from ctxmem.context.models import CompressionStrategy
from ctxmem.services.compression.engine import CompressionEngine, compute_ratio
from ctxmem.services.compression.strategies import normalize_whitespace
from ctxmem.utils.errors import UnknownAlgorithmError, ValidationError

SENTENCES = [
    f"Sentence number {i} explains how the storage layer keeps context records durable across restarts."
    for i in range(10)
]


def repetitive_text(lines: int = 200) -> str:
    return "\n".join(SENTENCES[i % len(SENTENCES)] for i in range(lines))


@pytest.fixture
def engine(token_counter):
    return CompressionEngine(token_counter, CompressionConfig())


class TestComputeRatio:
    def test_ratio(self):
        assert compute_ratio(100, 40) == 0.6

    def test_zero_original(self):
        assert compute_ratio(0, 0) == 0.0


class TestCompressionEngine:
    """Compression engine tests."""

    def test_default_strategy_is_balanced(self, engine):
        outcome = engine.compress(repetitive_text())
        assert outcome.strategy == "balanced"
        assert outcome.algorithm == "dedup"
        assert outcome.passthrough is False

    def test_balanced_round_trip(self, engine):
        text = repetitive_text()
        outcome = engine.compress(text, "balanced")
        assert outcome.compressed_tokens < outcome.original_tokens / 2
        assert engine.decompress(outcome.payload, outcome.algorithm) == normalize_whitespace(text)

    def test_conservative_round_trip(self, engine):
        text = "alpha   beta  \n\n\n\ngamma"
        outcome = engine.compress(text, CompressionStrategy.CONSERVATIVE)
        assert outcome.algorithm == "whitespace"
        assert engine.decompress(outcome.payload, outcome.algorithm) == "alpha beta\n\ngamma"

    def test_output_within_slack(self, engine):
        for strategy in ("conservative", "balanced", "aggressive"):
            outcome = engine.compress(repetitive_text(50), strategy)
            assert outcome.compressed_tokens <= outcome.original_tokens * 1.05
            assert outcome.compression_ratio == compute_ratio(outcome.original_tokens, outcome.compressed_tokens)

    def test_unknown_strategy_is_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.compress("text", "extreme")

    def test_unknown_algorithm_on_decompress(self, engine):
        with pytest.raises(UnknownAlgorithmError):
            engine.decompress("payload", "zstd")

    def test_invalid_utf8_is_passed_through(self, engine):
        outcome = engine.compress(b"\xff\xfe broken bytes", "balanced")
        assert outcome.passthrough is True
        assert outcome.algorithm == "none"
        assert outcome.compression_ratio == 0.0

    def test_utf8_bytes_are_decoded(self, engine):
        outcome = engine.compress(repetitive_text().encode("utf-8"), "balanced")
        assert outcome.algorithm == "dedup"

    def test_failing_strategy_falls_back(self, engine, monkeypatch):
        def explode(text, must_keep=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine._strategies[CompressionStrategy.BALANCED], "compress", explode)
        text = repetitive_text(20)
        outcome = engine.compress(text, "balanced")
        assert outcome.passthrough is True
        assert outcome.payload == text
        assert outcome.compression_ratio == 0.0
        assert outcome.strategy == "balanced"

    def test_expanding_strategy_falls_back(self, engine, monkeypatch):
        monkeypatch.setattr(
            engine._strategies[CompressionStrategy.CONSERVATIVE],
            "compress",
            lambda text, must_keep=None: text * 3,
        )
        outcome = engine.compress("some short text", "conservative")
        assert outcome.passthrough is True
        assert outcome.compressed_tokens == outcome.original_tokens

    def test_aggressive_keeps_must_keep(self, engine):
        text = repetitive_text(40) + "\nthe secret token is 42\n" + repetitive_text(40)
        outcome = engine.compress(text, "aggressive", must_keep=["the secret token is 42"])
        assert outcome.algorithm == "extractive"
        assert "the secret token is 42" in engine.decompress(outcome.payload, outcome.algorithm)

    def test_aggressive_falls_back_when_must_keep_lost(self, engine, monkeypatch):
        monkeypatch.setattr(
            engine._strategies[CompressionStrategy.AGGRESSIVE],
            "compress",
            lambda text, must_keep=None: "nothing kept",
        )
        text = repetitive_text(20) + "\nkeep me"
        outcome = engine.compress(text, "aggressive", must_keep=["keep me"])
        assert outcome.algorithm == "dedup"
        assert "keep me" in engine.decompress(outcome.payload, outcome.algorithm)

    def test_empty_text(self, engine):
        outcome = engine.compress("", "balanced")
        assert outcome.original_tokens == 0
        assert outcome.compression_ratio == 0.0

    def test_best_strategy(self, engine):
        text = repetitive_text(100)
        best = engine.best_strategy(text)
        for strategy in ("conservative", "balanced", "aggressive"):
            assert best.compression_ratio >= engine.compress(text, strategy).compression_ratio

    def test_best_strategy_tie_keeps_least_aggressive(self, engine):
        assert engine.best_strategy("").strategy == "conservative"

    def test_algorithms(self, engine):
        assert engine.algorithms == ["dedup", "extractive", "none", "whitespace"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
