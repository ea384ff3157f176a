"""Compression engine: strategy selection, token accounting and fallback."""

from dataclasses import dataclass

from ...config.models import CompressionConfig
from ...context.models import CompressionStrategy
from ...utils.errors import UnknownAlgorithmError, ValidationError
from ...utils.logger import get_logger
from .strategies import (
    AggressiveStrategy,
    BalancedStrategy,
    ConservativeStrategy,
    PassthroughStrategy,
    TextStrategy,
    normalize_whitespace,
)
from .token_counter import TokenCounter

logger = get_logger(__name__)


def compute_ratio(original_tokens: int, compressed_tokens: int) -> float:
    """``1 - compressed/original``; 0 for empty input."""
    if original_tokens <= 0:
        return 0.0
    return round(1 - compressed_tokens / original_tokens, 4)


@dataclass
class CompressionOutcome:
    """Artifact produced by the engine."""

    payload: str                # Compressed payload
    algorithm: str              # Algorithm that produced the payload
    strategy: str               # Strategy the caller asked for
    original_tokens: int        # Tokens before compression
    compressed_tokens: int      # Tokens after compression
    passthrough: bool = False   # True when the engine fell back to identity

    @property
    def compression_ratio(self) -> float:
        return compute_ratio(self.original_tokens, self.compressed_tokens)

    @property
    def tokens_saved(self) -> int:
        return self.original_tokens - self.compressed_tokens


class CompressionEngine:
    """Compresses text with a selectable strategy.

    Compression is best effort: a failing strategy, undecodable input or a
    payload that grows past ``original_tokens * (1 + slack_factor)`` yields a
    passthrough artifact with ratio 0 instead of an error.
    """

    def __init__(self, token_counter: TokenCounter, config: CompressionConfig | None = None):
        """Initialize engine.

        Args:
            token_counter: Counter used on both sides of every compression
            config: Compression configuration
        """
        self.config = config or CompressionConfig()
        self.token_counter = token_counter
        self._strategies: dict[CompressionStrategy, TextStrategy] = {
            CompressionStrategy.CONSERVATIVE: ConservativeStrategy(),
            CompressionStrategy.BALANCED: BalancedStrategy(self.config.min_dedup_line_length),
            CompressionStrategy.AGGRESSIVE: AggressiveStrategy(),
        }
        self._passthrough = PassthroughStrategy()
        self._by_algorithm: dict[str, TextStrategy] = {
            s.algorithm: s for s in [*self._strategies.values(), self._passthrough]
        }

    @property
    def algorithms(self) -> list[str]:
        return sorted(self._by_algorithm)

    def resolve_strategy(self, strategy: str | CompressionStrategy | None) -> CompressionStrategy:
        """Map a caller-supplied strategy (or None for the default) to the enum."""
        if strategy is None:
            return CompressionStrategy(self.config.default_strategy)
        try:
            return CompressionStrategy(strategy)
        except ValueError as e:
            raise ValidationError(
                f"Unknown compression strategy: {strategy}", field="strategy", value=strategy
            ) from e

    def compress(
        self,
        text: str | bytes,
        strategy: str | CompressionStrategy | None = None,
        must_keep: list[str] | None = None,
    ) -> CompressionOutcome:
        """Compress text.

        Args:
            text: Raw context text (bytes are decoded as UTF-8)
            strategy: conservative / balanced / aggressive; None for the default
            must_keep: Segments a lossy strategy has to preserve verbatim

        Returns:
            Compression outcome
        """
        selected = self.resolve_strategy(strategy)

        if isinstance(text, bytes):
            try:
                text = text.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning(
                    "Input is not valid UTF-8, storing as passthrough",
                    extra={"strategy": selected.value, "byte_length": len(text)},
                )
                return self._passthrough_outcome(text.decode("utf-8", errors="replace"), selected)

        original_tokens = self.token_counter.count_text(text)
        impl = self._strategies[selected]

        try:
            payload = impl.compress(text, must_keep=must_keep)
            if must_keep and not impl.lossless and self._missing_segments(text, impl.decompress(payload), must_keep):
                logger.warning(
                    "Lossy strategy dropped must-keep content, using balanced",
                    extra={"strategy": selected.value},
                )
                impl = self._strategies[CompressionStrategy.BALANCED]
                payload = impl.compress(text)
        except Exception as e:
            logger.warning(
                "Compression strategy failed, using passthrough",
                extra={
                    "strategy": selected.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return self._passthrough_outcome(text, selected, original_tokens)

        compressed_tokens = self.token_counter.count_text(payload)
        if compressed_tokens > original_tokens * (1 + self.config.slack_factor):
            logger.info(
                "Compression expanded content, using passthrough",
                extra={
                    "strategy": selected.value,
                    "original_tokens": original_tokens,
                    "compressed_tokens": compressed_tokens,
                },
            )
            return self._passthrough_outcome(text, selected, original_tokens)

        return CompressionOutcome(
            payload=payload,
            algorithm=impl.algorithm,
            strategy=selected.value,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
        )

    def decompress(self, payload: str, algorithm: str) -> str:
        """Turn a stored payload back into text.

        Raises:
            UnknownAlgorithmError: If no strategy produced ``algorithm``
            CompressionError: If the payload is malformed for its algorithm
        """
        impl = self._by_algorithm.get(algorithm)
        if impl is None:
            raise UnknownAlgorithmError(algorithm)
        return impl.decompress(payload)

    def estimate(self, text: str, strategy: str | CompressionStrategy | None = None) -> CompressionOutcome:
        """Compress without side effects; callers only read the accounting."""
        return self.compress(text, strategy)

    def best_strategy(self, text: str) -> CompressionOutcome:
        """Outcome of the strategy with the highest ratio (least aggressive on ties)."""
        best = self.compress(text, CompressionStrategy.CONSERVATIVE)
        for strategy in (CompressionStrategy.BALANCED, CompressionStrategy.AGGRESSIVE):
            outcome = self.compress(text, strategy)
            if outcome.compression_ratio > best.compression_ratio:
                best = outcome
        return best

    def _passthrough_outcome(
        self,
        text: str,
        strategy: CompressionStrategy,
        original_tokens: int | None = None,
    ) -> CompressionOutcome:
        if original_tokens is None:
            original_tokens = self.token_counter.count_text(text)
        return CompressionOutcome(
            payload=self._passthrough.compress(text),
            algorithm=self._passthrough.algorithm,
            strategy=strategy.value,
            original_tokens=original_tokens,
            compressed_tokens=original_tokens,
            passthrough=True,
        )

    @staticmethod
    def _missing_segments(text: str, restored: str, must_keep: list[str]) -> list[str]:
        """Must-keep segments present in the input but absent after a round trip."""
        normalized = normalize_whitespace(text)
        missing = []
        for segment in must_keep:
            needle = normalize_whitespace(segment)
            if needle and needle in normalized and needle not in restored:
                missing.append(segment)
        return missing
