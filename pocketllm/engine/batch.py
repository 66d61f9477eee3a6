"""Token batches submitted to the runtime in a single decode call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence


@dataclass(frozen=True)
class BatchEntry:
    token: int
    pos: int
    seq_id: int = 0
    logits: bool = False


class Batch:
    """Ordered, pre-sized list of (token, position, sequence id, logits flag).

    Adding past `capacity` is a programming error and raises ValueError.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"Batch capacity must be > 0, got {capacity}")
        self._capacity = int(capacity)
        self._entries: list[BatchEntry] = []

    @classmethod
    def for_prompt(cls, tokens: Sequence[int], *, start_pos: int = 0) -> "Batch":
        """Batch covering all prompt tokens; logits only for the final position."""
        batch = cls(len(tokens))
        last = len(tokens) - 1
        for i, token in enumerate(tokens):
            batch.add(token, start_pos + i, logits=(i == last))
        return batch

    @classmethod
    def single(cls, token: int, pos: int) -> "Batch":
        batch = cls(1)
        batch.add(token, pos, logits=True)
        return batch

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, token: int, pos: int, *, seq_id: int = 0, logits: bool = False) -> None:
        if len(self._entries) >= self._capacity:
            raise ValueError(
                f"Batch is full: capacity={self._capacity}, cannot add token at pos {pos}"
            )
        self._entries.append(BatchEntry(token=int(token), pos=int(pos), seq_id=seq_id, logits=logits))

    @property
    def tokens(self) -> list[int]:
        return [e.token for e in self._entries]

    @property
    def positions(self) -> list[int]:
        return [e.pos for e in self._entries]

    @property
    def logits_indices(self) -> list[int]:
        return [i for i, e in enumerate(self._entries) if e.logits]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BatchEntry]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"Batch(n_tokens={len(self)}, capacity={self._capacity})"
