"""Incremental stop-sequence matching over generated text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class StopMatch:
    start: int
    stop: str


class StopSequenceMatcher:
    """Accumulates the text of one request and detects configured stop strings.

    The whole text is kept, but each `feed()` only scans the window that can
    contain a match ending in the new fragment.

    Tie-break: the match with the smallest start index wins; for equal starts
    the stop string listed first by the caller wins.
    """

    def __init__(self, stop_sequences: Sequence[str]) -> None:
        self._stops = [s for s in stop_sequences if s]
        self._max_stop_len = max((len(s) for s in self._stops), default=0)
        self._text = ""
        self.match: StopMatch | None = None

    @property
    def text(self) -> str:
        """Accumulated text, truncated at the match start once a stop matched."""
        return self._text

    @property
    def stop_sequences(self) -> list[str]:
        return list(self._stops)

    def feed(self, fragment: str) -> StopMatch | None:
        if self.match is not None:
            return self.match
        if not fragment:
            return None

        prev_len = len(self._text)
        self._text += fragment
        if not self._stops:
            return None

        window_start = max(prev_len - self._max_stop_len + 1, 0)
        best: StopMatch | None = None
        for s in self._stops:
            idx = self._text.find(s, window_start)
            if idx == -1:
                continue
            if best is None or idx < best.start:
                best = StopMatch(start=idx, stop=s)

        if best is not None:
            self.match = best
            self._text = self._text[: best.start]
        return best

    def holdback(self) -> int:
        """Length of the longest text suffix that is a proper prefix of a stop string.

        Streaming must not emit these characters yet: a later fragment may
        complete the stop string and they would have to be retracted.
        """
        if self.match is not None or not self._stops:
            return 0
        longest = min(self._max_stop_len - 1, len(self._text))
        for k in range(longest, 0, -1):
            tail = self._text[-k:]
            if any(len(s) > k and s.startswith(tail) for s in self._stops):
                return k
        return 0

    def safe_length(self) -> int:
        """Number of leading characters that can no longer be affected by a stop match."""
        return len(self._text) - self.holdback()
