"""Unit tests for compression strategies."""

import pytest

from ctxmem.services.compression.strategies import (
    AggressiveStrategy,
    BalancedStrategy,
    ConservativeStrategy,
    PassthroughStrategy,
    normalize_whitespace,
)
from ctxmem.utils.errors import CompressionError

LONG_LINE = "This line is definitely longer than the dedup minimum length."


class TestNormalizeWhitespace:
    """Whitespace normalisation tests."""

    def test_collapses_blank_runs_and_trailing_space(self):
        text = "a  b   c\r\n\r\n\r\n  indented   x  \n"
        assert normalize_whitespace(text) == "a b c\n\n  indented x"

    def test_keeps_indentation(self):
        text = "def f():\n    return   1"
        assert normalize_whitespace(text) == "def f():\n    return 1"

    def test_idempotent(self):
        text = "  one  two \r\n\n\n\tthree\t\tfour  \n\n"
        once = normalize_whitespace(text)
        assert normalize_whitespace(once) == once

    def test_empty(self):
        assert normalize_whitespace("") == ""
        assert normalize_whitespace("\n\n  \n") == ""


class TestConservativeStrategy:
    def test_round_trip_is_normalised_text(self):
        strategy = ConservativeStrategy()
        text = "line one   \n\n\n\nline   two"
        payload = strategy.compress(text)
        assert payload == "line one\n\nline two"
        assert strategy.decompress(payload) == normalize_whitespace(text)


class TestPassthroughStrategy:
    def test_identity(self):
        strategy = PassthroughStrategy()
        text = "  untouched \r\n text  "
        assert strategy.decompress(strategy.compress(text)) == text


class TestBalancedStrategy:
    """Back-reference deduplication tests."""

    def setup_method(self):
        self.strategy = BalancedStrategy(min_line_length=32)

    def test_repeated_long_lines_become_references(self):
        text = f"{LONG_LINE}\nshort\n{LONG_LINE}\n{LONG_LINE}"
        payload = self.strategy.compress(text)
        assert payload.split("\n") == [LONG_LINE, "short", "[[dup:0]]", "[[dup:0]]"]
        assert self.strategy.decompress(payload) == text

    def test_short_repeated_lines_are_kept(self):
        text = "ok\nok\nok"
        assert self.strategy.compress(text) == text

    def test_literal_markers_are_escaped(self):
        text = f"[[dup:0]]\n\\[[dup:1]]\n{LONG_LINE}\n{LONG_LINE}"
        payload = self.strategy.compress(text)
        assert payload.split("\n")[:2] == ["\\[[dup:0]]", "\\\\[[dup:1]]"]
        assert self.strategy.decompress(payload) == text

    def test_round_trip_normalises(self):
        text = f"  {LONG_LINE}   \r\n\r\n\r\n  {LONG_LINE}\nend  "
        assert self.strategy.decompress(self.strategy.compress(text)) == normalize_whitespace(text)

    def test_dangling_reference_raises(self):
        with pytest.raises(CompressionError):
            self.strategy.decompress("[[dup:5]]")


class TestAggressiveStrategy:
    """Extractive selection tests."""

    TEXT = "\n".join([
        "# Heading",
        "first line of paragraph",
        "filler one",
        "filler two",
        "We decided to use SQLite.",
        "filler three",
        "",
        "second paragraph starts",
        "filler four",
    ])

    def setup_method(self):
        self.strategy = AggressiveStrategy()

    def test_keeps_headings_paragraph_starts_and_signals(self):
        payload = self.strategy.compress(self.TEXT)
        assert payload.split("\n") == [
            "# Heading",
            "[... 3 lines omitted]",
            "We decided to use SQLite.",
            "[... 1 lines omitted]",
            "second paragraph starts",
            "[... 1 lines omitted]",
        ]

    def test_must_keep_segments_survive(self):
        payload = self.strategy.compress(self.TEXT, must_keep=["filler two", "filler four"])
        assert "filler two" in payload
        assert "filler four" in payload
        assert "filler one" not in payload

    def test_must_keep_spanning_lines(self):
        payload = self.strategy.compress(self.TEXT, must_keep=["filler one\nfiller two"])
        assert "filler one\nfiller two" in self.strategy.decompress(payload)

    def test_repeated_lines_kept_once(self):
        text = "def handler():\nbody\n\ndef handler():\nbody"
        payload = self.strategy.compress(text)
        assert payload.count("def handler():") == 1

    def test_is_important(self):
        assert self.strategy.is_important("Traceback (most recent call last):")
        assert self.strategy.is_important("class Foo:")
        assert self.strategy.is_important("see src/app/main.py")
        assert not self.strategy.is_important("just some words")

    def test_is_lossy(self):
        assert self.strategy.lossless is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
