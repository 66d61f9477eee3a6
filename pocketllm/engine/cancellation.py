"""Cooperative cancellation flag."""

from __future__ import annotations

import threading


class CancellationToken:
    """Single-writer / multi-reader cancel flag.

    The decode loop checks `is_cancelled` once per step, so a cancel takes
    effect at the latest after one forward pass.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"
