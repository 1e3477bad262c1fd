"""Reference identity store and check-in recorders."""

from __future__ import annotations

import csv
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Iterable, List, Optional, Tuple

import numpy as np

from facecheck.config import ProgressiveConfig
from facecheck.errors import RepositoryWriteFailure
from facecheck.io_utils import ensure_dir, save_image
from facecheck.recognition.enrollment import AdmitResult, admit_with_reason
from facecheck.types import EmbeddingEntry, EnrollmentSet, Identity

LOGGER = logging.getLogger("facecheck.store")

IdentityListener = Callable[[List[Identity]], None]


class InMemoryIdentityStore:
    """Identity collection that is swapped wholesale on every change.

    Subscribers receive the new full list; no identity object is mutated after
    it has been published.
    """

    def __init__(
        self,
        identities: Iterable[Identity] = (),
        progressive: Optional[ProgressiveConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._identities: Tuple[Identity, ...] = tuple(identities)
        self._listeners: List[IdentityListener] = []
        self.progressive = progressive or ProgressiveConfig()
        self._clock = clock

    def list(self) -> List[Identity]:
        return list(self._identities)

    def subscribe(self, callback: IdentityListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def get(self, identity_id: str) -> Optional[Identity]:
        for identity in self._identities:
            if identity.identity_id == identity_id:
                return identity
        return None

    def get_enrollment(self, identity_id: str) -> Optional[EnrollmentSet]:
        identity = self.get(identity_id)
        return identity.enrollment if identity is not None else None

    def add_identity(self, identity: Identity) -> None:
        if self.get(identity.identity_id) is not None:
            raise ValueError(f"Identity {identity.identity_id!r} already exists")
        self._publish(self._identities + (identity,))

    def remove_identity(self, identity_id: str) -> None:
        self._require(identity_id)
        self._publish(tuple(i for i in self._identities if i.identity_id != identity_id))

    def upsert_enrollment(self, identity_id: str, enrollment: Optional[EnrollmentSet]) -> None:
        self._require(identity_id)
        updated = tuple(
            replace(i, enrollment=enrollment) if i.identity_id == identity_id else i for i in self._identities
        )
        self._publish(updated)

    def clear_enrollment(self, identity_id: str) -> None:
        self.upsert_enrollment(identity_id, None)

    def append_embedding(self, identity_id: str, entry: EmbeddingEntry) -> AdmitResult:
        """Offer a sample to the identity's enrollment set through the aggregator."""
        identity = self._require(identity_id)
        outcome = admit_with_reason(identity.enrollment, entry, self.progressive, now=self._clock())
        if outcome.enrollment is not identity.enrollment:
            self.upsert_enrollment(identity_id, outcome.enrollment)
        LOGGER.debug("append_embedding %s -> %s", identity_id, outcome.decision)
        return outcome

    def _require(self, identity_id: str) -> Identity:
        identity = self.get(identity_id)
        if identity is None:
            raise KeyError(f"Unknown identity {identity_id!r}")
        return identity

    def _publish(self, identities: Tuple[Identity, ...]) -> None:
        self._identities = identities
        for callback in list(self._listeners):
            callback(list(identities))


@dataclass(frozen=True)
class CheckInRecord:
    identity_id: str
    timestamp: float
    similarity: float
    snapshot: Optional[np.ndarray] = None


class InMemoryCheckInRecorder:
    """Newest-first record list capped at ``capacity``."""

    def __init__(self, capacity: int = 100) -> None:
        self._records: Deque[CheckInRecord] = deque(maxlen=capacity)

    def record(
        self, identity_id: str, timestamp: float, similarity: float, snapshot: Optional[np.ndarray] = None
    ) -> None:
        self._records.appendleft(CheckInRecord(identity_id, timestamp, similarity, snapshot))

    @property
    def records(self) -> List[CheckInRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)


class CsvCheckInRecorder:
    """Appends one row per check-in; snapshots are written beside the CSV when enabled."""

    fieldnames = ["checked_in_at", "timestamp", "identity_id", "similarity", "snapshot_path"]

    def __init__(self, csv_path: Path, snapshot_dir: Optional[Path] = None) -> None:
        self.csv_path = csv_path
        self.snapshot_dir = snapshot_dir

    def record(
        self, identity_id: str, timestamp: float, similarity: float, snapshot: Optional[np.ndarray] = None
    ) -> None:
        try:
            ensure_dir(self.csv_path.parent)
            snapshot_path = self._write_snapshot(identity_id, timestamp, snapshot)
            write_header = not self.csv_path.exists() or self.csv_path.stat().st_size == 0
            with self.csv_path.open("a", newline="", encoding="utf-8") as fh:
                writer = csv.DictWriter(fh, fieldnames=self.fieldnames)
                if write_header:
                    writer.writeheader()
                writer.writerow(
                    {
                        "checked_in_at": datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(),
                        "timestamp": f"{timestamp:.3f}",
                        "identity_id": identity_id,
                        "similarity": f"{similarity:.4f}",
                        "snapshot_path": str(snapshot_path) if snapshot_path else "",
                    }
                )
        except OSError as exc:
            raise RepositoryWriteFailure(f"Could not record check-in for {identity_id}: {exc}") from exc

    def _write_snapshot(self, identity_id: str, timestamp: float, snapshot: Optional[np.ndarray]) -> Optional[Path]:
        if self.snapshot_dir is None or snapshot is None or snapshot.size == 0:
            return None
        return save_image(self.snapshot_dir / f"{identity_id}_{int(timestamp * 1000)}.jpg", snapshot)
