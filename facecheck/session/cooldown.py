"""Per-identity check-in cooldowns for one detection session."""

from __future__ import annotations

from typing import Dict, Optional


class CooldownRegistry:
    """identity_id -> last accepted timestamp (seconds).

    Entries are only ever overwritten by newer timestamps; staleness is decided
    on read against the window.
    """

    def __init__(self, window_s: float) -> None:
        self.window_s = float(window_s)
        self._last: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._last)

    def __contains__(self, identity_id: object) -> bool:
        return identity_id in self._last

    def record(self, identity_id: str, timestamp: float) -> None:
        previous = self._last.get(identity_id)
        if previous is None or timestamp >= previous:
            self._last[identity_id] = timestamp

    def last(self, identity_id: str) -> Optional[float]:
        return self._last.get(identity_id)

    def remaining(self, identity_id: str, now: float) -> float:
        last = self._last.get(identity_id)
        if last is None:
            return 0.0
        return max(0.0, self.window_s - (now - last))

    def in_cooldown(self, identity_id: str, now: float) -> bool:
        return self.remaining(identity_id, now) > 0.0
