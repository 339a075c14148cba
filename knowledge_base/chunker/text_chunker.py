"""
knowledge_base/chunker/text_chunker.py

Boundary-aware sliding-window text chunker.

Single responsibility: take normalized document text and produce an
ordered list of TextChunk objects. Pure transform, no I/O.
"""

from __future__ import annotations

import re
from typing import List, Optional

from knowledge_base.core.config import settings
from knowledge_base.core.exceptions import ValidationError
from knowledge_base.core.logger import get_logger
from knowledge_base.vector_store.base import TextChunk

logger = get_logger(__name__)

#: Sentence terminators, ASCII and full-width CJK.
SENTENCE_ENDINGS = frozenset("。．！!？?；;.\n")
#: ASCII terminators only count when followed by whitespace (skips "3.14", "e.g.x").
_ASCII_ENDINGS = frozenset(".!?;")

_HORIZONTAL_WS = re.compile(r"[ \t\f\v\u00a0\u3000]+")
_SPACE_AROUND_NEWLINE = re.compile(r" *\n *")
_BLANK_LINES = re.compile(r"\n{3,}")


def normalize(text: str) -> str:
    """
    Normalize whitespace the same way for every source.

    Newlines are unified, horizontal whitespace collapses to one space,
    runs of blank lines collapse to a single paragraph break.
    """
    if not text:
        return ""
    text = text.replace("\ufeff", "").replace("\x00", "")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


class TextChunker:
    """
    Splits text into overlapping windows that prefer natural breaks.

    Chunking strategy:

        [  chunk_0  .]
                [ chunk_1 \\n\\n]      ← starts `overlap` chars before chunk_0 ends
                        [ chunk_2  ]

    Each window aims at ``chunk_size`` characters and may end anywhere in
    ``[chunk_size - tol, chunk_size + tol]`` (tol = ``boundary_tolerance``
    × ``chunk_size``). Inside that window a paragraph break wins over a
    sentence end; among equals the one closest to ``chunk_size`` wins.
    With no break in the window the text is cut at exactly ``chunk_size``.
    A tail that fits in ``chunk_size + tol`` is kept whole.

    Chunks are exact slices of the normalized text, so dropping the first
    ``end_offset(n-1) - start_offset(n)`` characters of every chunk after
    the first and concatenating gives back the normalized input.
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        boundary_tolerance: Optional[float] = None,
        max_chunks: Optional[int] = None,
    ) -> None:
        """
        Args:
            chunk_size         : Target characters per chunk.
                                 Defaults to ``settings.chunk_size``.
            chunk_overlap      : Characters shared between consecutive chunks.
                                 Defaults to ``settings.chunk_overlap``.
            boundary_tolerance : Fraction of ``chunk_size`` a chunk may
                                 shrink or grow to land on a boundary.
            max_chunks         : Upper bound on chunks per document.

        Raises:
            ValueError: chunk_size <= chunk_overlap, or a negative value.
        """
        self.chunk_size: int = settings.chunk_size if chunk_size is None else chunk_size
        self.chunk_overlap: int = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        tolerance = settings.chunk_boundary_tolerance if boundary_tolerance is None else boundary_tolerance
        self.max_chunks: int = settings.max_chunks_per_document if max_chunks is None else max_chunks

        if self.chunk_size <= 0 or self.chunk_overlap < 0 or tolerance < 0:
            raise ValueError("chunk_size must be positive; chunk_overlap and tolerance non-negative.")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_size ({self.chunk_size})."
            )

        self.tolerance: int = int(self.chunk_size * tolerance)

    # ── Public API ─────────────────────────────────────────────────────────────

    def chunk(self, text: str) -> List[TextChunk]:
        """
        Split ``text`` into TextChunk objects numbered 0..n-1.

        The input is normalized first; empty input yields ``[]``.

        Raises:
            ValidationError: The text would need more than ``max_chunks`` chunks.
        """
        text = normalize(text)
        if not text:
            return []

        chunks: List[TextChunk] = []
        total = len(text)
        start = 0

        while start < total:
            if total - start <= self.chunk_size + self.tolerance:
                end = total
            else:
                end = self._find_break(text, start)

            chunks.append(
                TextChunk(
                    text=text[start:end],
                    chunk_index=len(chunks),
                    start_offset=start,
                    end_offset=end,
                )
            )
            if end >= total:
                break
            if len(chunks) >= self.max_chunks:
                raise ValidationError(
                    f"Document needs more than {self.max_chunks} chunks "
                    f"at chunk_size={self.chunk_size}; split it or raise the limit."
                )
            start = end - self.chunk_overlap

        logger.debug(
            "Produced %d chunk(s) from %d character(s).",
            len(chunks),
            total,
        )
        return chunks

    # ── Internals ──────────────────────────────────────────────────────────────

    def _find_break(self, text: str, start: int) -> int:
        """Return the end offset of the chunk starting at ``start``."""
        target = start + self.chunk_size
        # The floor keeps every window longer than the overlap so the
        # next start always moves forward.
        low = start + max(self.chunk_size - self.tolerance, self.chunk_overlap + 1)
        high = min(target + self.tolerance, len(text))

        paragraph: List[int] = []
        sentence: List[int] = []
        for i in range(low - 1, high):
            ch = text[i]
            if ch == "\n" and i + 1 < len(text) and text[i + 1] == "\n":
                paragraph.append(i + 2)
            elif ch in SENTENCE_ENDINGS:
                if ch in _ASCII_ENDINGS and i + 1 < len(text) and not text[i + 1].isspace():
                    continue
                sentence.append(i + 1)

        for candidates in (paragraph, sentence):
            candidates = [pos for pos in candidates if low <= pos <= high]
            if candidates:
                return min(candidates, key=lambda pos: (abs(pos - target), -pos))
        return target
