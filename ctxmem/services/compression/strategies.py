"""Text compression strategies.

Each strategy turns raw context text into a smaller payload and knows how to
turn that payload back into text:

- ConservativeStrategy ("whitespace"): whitespace normalisation only
- BalancedStrategy ("dedup"): normalisation plus back-references for
  repeated lines; decompresses to exactly the normalised text
- AggressiveStrategy ("extractive"): keeps only structurally or semantically
  important lines; lossy
- PassthroughStrategy ("none"): identity, used as the fallback
"""

import re
from abc import ABC, abstractmethod
from bisect import bisect_right

from ...utils.errors import CompressionError

_INNER_WHITESPACE = re.compile(r"(?<=\S)[ \t]{2,}(?=\S)")


def normalize_whitespace(text: str) -> str:
    """Normalise line endings and whitespace without touching indentation.

    Idempotent: ``normalize_whitespace(normalize_whitespace(t))`` equals
    ``normalize_whitespace(t)``.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines: list[str] = []
    blank_run = 0
    for raw in text.split("\n"):
        line = raw.rstrip()
        if not line:
            blank_run += 1
            if blank_run == 1:
                lines.append("")
            continue
        blank_run = 0
        indent = len(line) - len(line.lstrip(" \t"))
        lines.append(line[:indent] + _INNER_WHITESPACE.sub(" ", line[indent:]))
    return "\n".join(lines).strip("\n")


class TextStrategy(ABC):
    """Base class for compression strategies."""

    algorithm: str = ""
    lossless: bool = True

    @abstractmethod
    def compress(self, text: str, must_keep: list[str] | None = None) -> str:
        """Produce the payload for ``text``."""

    @abstractmethod
    def decompress(self, payload: str) -> str:
        """Turn a payload produced by :meth:`compress` back into text."""


class PassthroughStrategy(TextStrategy):
    algorithm = "none"

    def compress(self, text: str, must_keep: list[str] | None = None) -> str:
        return text

    def decompress(self, payload: str) -> str:
        return payload


class ConservativeStrategy(TextStrategy):
    """Whitespace normalisation only."""

    algorithm = "whitespace"

    def compress(self, text: str, must_keep: list[str] | None = None) -> str:
        return normalize_whitespace(text)

    def decompress(self, payload: str) -> str:
        return payload


class BalancedStrategy(TextStrategy):
    """Whitespace normalisation plus repeated-line back-references.

    A repeated line of at least ``min_line_length`` characters becomes
    ``[[dup:N]]`` where N is the index of its first occurrence. Lines that
    already look like a marker get one leading backslash on the way in and
    lose it on the way out.
    """

    algorithm = "dedup"

    _REFERENCE = re.compile(r"^\[\[dup:(\d+)\]\]$")
    _ESCAPED = re.compile(r"^\\+\[\[dup:\d+\]\]$")

    def __init__(self, min_line_length: int = 32) -> None:
        self.min_line_length = min_line_length

    def compress(self, text: str, must_keep: list[str] | None = None) -> str:
        first_seen: dict[str, int] = {}
        out: list[str] = []
        for index, line in enumerate(normalize_whitespace(text).split("\n")):
            if len(line.strip()) >= self.min_line_length:
                if line in first_seen:
                    out.append(f"[[dup:{first_seen[line]}]]")
                    continue
                first_seen[line] = index
            if self._REFERENCE.match(line) or self._ESCAPED.match(line):
                line = "\\" + line
            out.append(line)
        return "\n".join(out)

    def decompress(self, payload: str) -> str:
        out: list[str] = []
        for line in payload.split("\n"):
            match = self._REFERENCE.match(line)
            if match:
                target = int(match.group(1))
                if target >= len(out):
                    raise CompressionError(
                        f"Dangling back-reference to line {target}", algorithm=self.algorithm
                    )
                out.append(out[target])
            elif self._ESCAPED.match(line):
                out.append(line[1:])
            else:
                out.append(line)
        return "\n".join(out)


IMPORTANCE_KEYWORDS = [
    # Explicit importance markers
    "important", "remember", "don't forget", "critical", "must", "never", "always",
    "重要", "记住", "关键",
    # Decisions and commitments
    "decided", "decision", "agreed", "confirmed", "chose", "we will", "plan", "deadline",
    "决定", "确认", "计划",
    # Problems and their resolution
    "error", "exception", "traceback", "failed", "failure", "bug", "fix", "fixed",
    "warning", "todo", "fixme",
    "错误", "修复",
    # Preferences
    "prefer", "preference",
]

STRUCTURE_PATTERNS = [
    r"^\s*#{1,6}\s",                                      # markdown heading
    r"^\s*(async\s+def|def|class|function|interface|type|export|impl|fn)\s",
    r"^\s*(import\s|from\s+\S+\s+import\s)",
    r"^\s*[-*]\s+\[[ xX]\]",                              # checklist item
    r"^(diff --git|@@ |\+\+\+ |--- )",                    # diff headers
    r"[\w./-]+\.(py|ts|tsx|js|jsx|go|rs|java|kt|rb|md|json|ya?ml|toml|sql|sh)\b",
]


class AggressiveStrategy(TextStrategy):
    """Extractive selection of important lines.

    Kept: the first line of every paragraph, lines matching importance
    keywords or structure patterns, and every line overlapping a must-keep
    segment. Runs of dropped lines collapse into one omission marker.
    Repeated lines are kept once.
    """

    algorithm = "extractive"
    lossless = False

    def __init__(self) -> None:
        self.keywords = [k.lower() for k in IMPORTANCE_KEYWORDS]
        self.patterns = [re.compile(p, re.IGNORECASE) for p in STRUCTURE_PATTERNS]

    def is_important(self, line: str) -> bool:
        lowered = line.lower()
        if any(keyword in lowered for keyword in self.keywords):
            return True
        return any(pattern.search(line) for pattern in self.patterns)

    def compress(self, text: str, must_keep: list[str] | None = None) -> str:
        normalized = normalize_whitespace(text)
        lines = normalized.split("\n")
        pinned = self._pinned_lines(normalized, lines, must_keep or [])

        out: list[str] = []
        kept: set[str] = set()
        omitted = 0
        paragraph_start = True
        for index, line in enumerate(lines):
            if index in pinned:
                keep = True
                paragraph_start = not line
            elif not line:
                paragraph_start = True
                continue
            else:
                keep = (paragraph_start or self.is_important(line)) and line not in kept
                paragraph_start = False

            if not keep:
                omitted += 1
                continue
            if omitted:
                out.append(f"[... {omitted} lines omitted]")
                omitted = 0
            out.append(line)
            kept.add(line)

        if omitted:
            out.append(f"[... {omitted} lines omitted]")
        return "\n".join(out)

    def decompress(self, payload: str) -> str:
        return payload

    @staticmethod
    def _pinned_lines(normalized: str, lines: list[str], must_keep: list[str]) -> set[int]:
        """Indices of lines overlapping any occurrence of a must-keep segment."""
        if not must_keep:
            return set()

        line_starts = []
        offset = 0
        for line in lines:
            line_starts.append(offset)
            offset += len(line) + 1

        pinned: set[int] = set()
        for segment in must_keep:
            needle = normalize_whitespace(segment)
            if not needle:
                continue
            start = normalized.find(needle)
            while start != -1:
                first = bisect_right(line_starts, start) - 1
                last = bisect_right(line_starts, start + len(needle) - 1) - 1
                pinned.update(range(first, last + 1))
                start = normalized.find(needle, start + 1)
        return pinned
