"""Line-oriented, token-budgeted chunking for memory text."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from memdex.modules.memory.models import MemoryChunk

__all__ = [
    "APPROX_CHARS_PER_TOKEN",
    "ChunkingBudget",
    "chunk_text",
    "estimate_tokens",
    "hash_text",
]

# Token budgets are converted to character budgets with this ratio.
APPROX_CHARS_PER_TOKEN = 4
_MIN_CHUNK_CHARS = 32


def hash_text(text: str) -> str:
    """Return the SHA-256 hex digest of ``text`` encoded as UTF-8.

    Example:
        >>> hash_text("")[:12]
        'e3b0c44298fc'
    """

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    """Rough token estimate used for embedding batch sizing."""

    if not text:
        return 0
    return -(-len(text) // APPROX_CHARS_PER_TOKEN)


@dataclass(frozen=True, slots=True)
class ChunkingBudget:
    """Character budgets derived from token settings.

    Example:
        >>> ChunkingBudget.from_tokens(400, 80)
        ChunkingBudget(max_chars=1600, overlap_chars=320)
        >>> ChunkingBudget.from_tokens(1, 0).max_chars
        32
    """

    max_chars: int
    overlap_chars: int

    @classmethod
    def from_tokens(cls, tokens: int, overlap: int) -> "ChunkingBudget":
        return cls(
            max_chars=max(_MIN_CHUNK_CHARS, tokens * APPROX_CHARS_PER_TOKEN),
            overlap_chars=max(0, overlap * APPROX_CHARS_PER_TOKEN),
        )


def _segments(line: str, max_chars: int) -> list[str]:
    if not line:
        return [""]
    return [
        line[start : start + max_chars]
        for start in range(0, len(line), max_chars)
    ]


class _ChunkBuilder:
    """Accumulates ``(line_no, text)`` entries and emits chunks."""

    def __init__(self, budget: ChunkingBudget) -> None:
        self._budget = budget
        self._entries: list[tuple[int, str]] = []
        self._chars = 0
        self.chunks: list[MemoryChunk] = []

    @property
    def chars(self) -> int:
        return self._chars

    @property
    def empty(self) -> bool:
        return not self._entries

    def add(self, line_no: int, text: str) -> None:
        self._entries.append((line_no, text))
        self._chars += len(text) + 1

    def flush(self) -> None:
        if not self._entries:
            return
        body = "\n".join(text for _, text in self._entries)
        self.chunks.append(
            MemoryChunk(
                start_line=self._entries[0][0],
                end_line=self._entries[-1][0],
                text=body,
                hash=hash_text(body),
            )
        )

    def carry_overlap(self) -> None:
        """Keep trailing entries worth at least ``overlap_chars``."""

        if self._budget.overlap_chars <= 0 or not self._entries:
            self._entries = []
            self._chars = 0
            return
        kept: list[tuple[int, str]] = []
        acc = 0
        for entry in reversed(self._entries):
            acc += len(entry[1]) + 1
            kept.insert(0, entry)
            if acc >= self._budget.overlap_chars:
                break
        self._entries = kept
        self._chars = sum(len(text) + 1 for _, text in kept)


def chunk_text(text: str, *, tokens: int, overlap: int) -> list[MemoryChunk]:
    """Split ``text`` into overlapping, line-aligned chunks.

    Lines longer than the character budget are split into several segments
    that keep the same line number. A chunk is emitted whenever the next
    segment would overflow the budget, after which the trailing lines worth
    ``overlap`` tokens are carried into the next chunk. Whitespace-only text
    yields no chunks.

    Args:
        text: Document text; ``\\n`` separates lines.
        tokens: Target chunk size in tokens (>= 1).
        overlap: Overlap between consecutive chunks in tokens.

    Returns:
        Chunks ordered by ``start_line``.

    Example:
        >>> chunks = chunk_text("a\\nb\\nc", tokens=400, overlap=0)
        >>> [(c.start_line, c.end_line) for c in chunks]
        [(1, 3)]
        >>> chunk_text("   \\n\\n", tokens=400, overlap=80)
        []
    """

    if not text.strip():
        return []

    budget = ChunkingBudget.from_tokens(tokens, overlap)
    builder = _ChunkBuilder(budget)

    for index, line in enumerate(text.split("\n")):
        line_no = index + 1
        for segment in _segments(line, budget.max_chars):
            size = len(segment) + 1
            if builder.chars + size > budget.max_chars and not builder.empty:
                builder.flush()
                builder.carry_overlap()
            builder.add(line_no, segment)

    builder.flush()
    return builder.chunks
