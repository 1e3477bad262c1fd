"""Bounded newest-first log of accepted check-ins, for display only."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterator, List

from facecheck.types import CheckInLogEntry


class CheckInLog:
    def __init__(self, capacity: int = 50) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: Deque[CheckInLogEntry] = deque(maxlen=capacity)

    def append(self, entry: CheckInLogEntry) -> None:
        # appendleft on a bounded deque drops the oldest entry from the right.
        self._entries.appendleft(entry)

    def entries(self) -> List[CheckInLogEntry]:
        return list(self._entries)

    def __iter__(self) -> Iterator[CheckInLogEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
