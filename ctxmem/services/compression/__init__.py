"""Compression service for context memory."""

from .engine import CompressionEngine, CompressionOutcome, compute_ratio
from .strategies import (
    AggressiveStrategy,
    BalancedStrategy,
    ConservativeStrategy,
    PassthroughStrategy,
    TextStrategy,
    normalize_whitespace,
)
from .token_counter import TokenCounter, render_messages

__all__ = [
    "CompressionEngine",
    "CompressionOutcome",
    "compute_ratio",
    "TextStrategy",
    "ConservativeStrategy",
    "BalancedStrategy",
    "AggressiveStrategy",
    "PassthroughStrategy",
    "normalize_whitespace",
    "TokenCounter",
    "render_messages",
]
