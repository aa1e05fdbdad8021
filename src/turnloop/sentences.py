"""
Sentence segmentation for streaming LLM output.

LLM text arrives in small deltas; TTS wants whole sentences. The segmenter
buffers deltas and releases a sentence once a boundary is confirmed by the
whitespace that follows it, so "3.5" or "e.g." mid-stream is not cut early.
Text that runs past `max_chars` without a boundary is cut at the last space.
"""

from __future__ import annotations

import re
from typing import List, Optional

_BOUNDARY_RE = re.compile(r"(?<=[.!?])[\"')\]]*\s+|\n+")

DEFAULT_MAX_CHARS = 200
DEFAULT_MIN_CHARS = 10


class SentenceSegmenter:
    """Incremental sentence splitter fed with text deltas."""

    def __init__(self, max_chars: int = DEFAULT_MAX_CHARS, min_chars: int = DEFAULT_MIN_CHARS):
        self.max_chars = max_chars
        self.min_chars = min_chars
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, delta: str) -> List[str]:
        """Add a delta and return any sentences it completed, in order."""
        if not delta:
            return []
        self._buffer += delta

        sentences: List[str] = []
        while True:
            sentence = self._next_sentence()
            if sentence is None:
                break
            sentences.append(sentence)
        return sentences

    def flush(self) -> Optional[str]:
        """Return whatever is left in the buffer as a final sentence."""
        remainder = self._buffer.strip()
        self._buffer = ""
        return remainder or None

    def reset(self) -> None:
        self._buffer = ""

    def _next_sentence(self) -> Optional[str]:
        for match in _BOUNDARY_RE.finditer(self._buffer):
            candidate = self._buffer[:match.end()].strip()
            # Very short fragments ("Hi.", "Ok!") are merged into the next sentence.
            if len(candidate) >= self.min_chars:
                self._buffer = self._buffer[match.end():]
                return candidate

        if len(self._buffer) > self.max_chars:
            cut = self._buffer.rfind(" ", 0, self.max_chars)
            if cut <= 0:
                cut = self.max_chars
            candidate = self._buffer[:cut].strip()
            self._buffer = self._buffer[cut:].lstrip()
            if candidate:
                return candidate
        return None
