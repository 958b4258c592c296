"""
Sentence Buffer

Accumulates streamed model output into synthesizable sentence units.
Handles abbreviation protection, soft clause splitting for long sentences
and a hard length cap for unpunctuated streams.

A unit is cut when:
  1. Terminal punctuation (. ? !) is followed by whitespace
  2. The residual is long and a clause mark (, ; :) is followed by whitespace
  3. The residual reaches the hard cap (cut at the last word boundary)
  4. The stream ends (flush)
"""

import re
from typing import AsyncIterator, List, Optional

from .models import SentenceUnit

# Periods inside these are not sentence ends
ABBREVIATIONS = frozenset({
    "Dr.", "Mr.", "Mrs.", "Ms.", "Prof.", "Sr.", "Jr.",
    "etc.", "vs.", "e.g.", "i.e.",
})

# End punctuation, optional closing quotes/brackets, then whitespace.
# End-of-buffer does not count: the next fragment may continue a decimal
# ("3." + "5") or an ellipsis.
_STRONG_END = re.compile(r'[.?!]+["\'”’)\]]*\s+')
_SOFT_END = re.compile(r'[,;:]\s+')
_WHITESPACE = re.compile(r'\s')
_WORD = re.compile(r'\w')


class SentenceBuffer:
    """Turns a stream of text fragments into ordered sentence units."""

    def __init__(self, max_chars: int = 200, soft_limit: int = 120):
        if max_chars <= 0:
            raise ValueError(f"max_chars must be positive, got {max_chars}")
        self.max_chars = max_chars
        self.soft_limit = min(soft_limit, max_chars)
        self._residual = ""
        self._next_position = 0

    @property
    def residual(self) -> str:
        return self._residual

    @property
    def units_emitted(self) -> int:
        return self._next_position

    def accumulate(self, fragment: str) -> List[SentenceUnit]:
        """Append a fragment and return every unit it completes, in order."""
        if fragment:
            self._residual += fragment

        units = []
        while True:
            cut = self._find_cut()
            if cut is None:
                break
            units.append(self._emit(cut))
        return units

    def flush(self) -> List[SentenceUnit]:
        """Emit whatever is left once the stream has ended."""
        if not self._residual.strip():
            self._residual = ""
            return []
        return [self._emit(len(self._residual))]

    def _emit(self, cut: int) -> SentenceUnit:
        unit = SentenceUnit(text=self._residual[:cut], position=self._next_position)
        self._residual = self._residual[cut:]
        self._next_position += 1
        return unit

    def _find_cut(self) -> Optional[int]:
        text = self._residual

        for match in _STRONG_END.finditer(text):
            if match.start() >= self.max_chars:
                break
            if self._is_abbreviation(text, match.start()):
                continue
            if not _WORD.search(text, 0, match.start()):
                # Punctuation with nothing to say in front of it
                continue
            return match.end()

        if len(text) >= self.soft_limit:
            cut = None
            for match in _SOFT_END.finditer(text):
                if match.end() > self.max_chars:
                    break
                if _WORD.search(text, 0, match.start()):
                    cut = match.end()
            if cut is not None:
                return cut

        if len(text) >= self.max_chars:
            last_space = None
            for match in _WHITESPACE.finditer(text, 0, self.max_chars):
                last_space = match.start()
            if last_space and _WORD.search(text, 0, last_space):
                return last_space + 1
            return self.max_chars

        return None

    @staticmethod
    def _is_abbreviation(text: str, punct_index: int) -> bool:
        if text[punct_index] != ".":
            return False
        head = text[:punct_index + 1].split()
        return bool(head) and head[-1] in ABBREVIATIONS


async def split_stream(
    fragments: AsyncIterator[str],
    buffer: Optional[SentenceBuffer] = None,
) -> AsyncIterator[SentenceUnit]:
    """
    Drive a SentenceBuffer over an async stream of fragments.

    The residual is flushed when the stream ends and also when it raises,
    in which case the error is re-raised after the flushed units.
    """
    buffer = buffer or SentenceBuffer()
    try:
        async for fragment in fragments:
            for unit in buffer.accumulate(fragment):
                yield unit
    except Exception:
        for unit in buffer.flush():
            yield unit
        raise
    for unit in buffer.flush():
        yield unit
