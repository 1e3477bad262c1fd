"""Identity bank persistence: one parquet row per identity plus a JSON summary."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from facecheck.io_utils import dump_json, ensure_dir
from facecheck.types import EnrollmentSet, Identity

LOGGER = logging.getLogger("facecheck.recognition.identity_bank")

BANK_COLUMNS = ["identity_id", "name", "avatar_url", "last_check_in", "legacy_vector", "enrollment"]


@dataclass
class IdentityBankArtifacts:
    parquet_path: Path
    meta_json_path: Path


def _identity_row(identity: Identity) -> Dict:
    legacy = None
    if identity.legacy_vector is not None:
        legacy = np.asarray(identity.legacy_vector, dtype=np.float32).reshape(-1).tolist()
    enrollment = None
    if identity.enrollment is not None:
        enrollment = json.dumps(identity.enrollment.to_dict())
    return {
        "identity_id": identity.identity_id,
        "name": identity.name,
        "avatar_url": identity.avatar_url,
        "last_check_in": identity.last_check_in,
        "legacy_vector": legacy,
        "enrollment": enrollment,
    }


def save_identity_bank(identities: Iterable[Identity], output_dir: Path) -> IdentityBankArtifacts:
    ensure_dir(output_dir)
    rows = [_identity_row(identity) for identity in identities]
    df = pd.DataFrame(rows, columns=BANK_COLUMNS)

    parquet_path = output_dir / "identity_bank.parquet"
    meta_json_path = output_dir / "identity_bank_meta.json"
    df.to_parquet(parquet_path, index=False)

    counts = {
        row["identity_id"]: len(json.loads(row["enrollment"])["entries"]) if row["enrollment"] else 0
        for row in rows
    }
    metadata = {
        "identities": df["identity_id"].tolist(),
        "names": df.set_index("identity_id")["name"].to_dict() if rows else {},
        "entry_counts": counts,
        "num_identities": len(df),
    }
    dump_json(meta_json_path, metadata)

    LOGGER.info("Identity bank saved: %s identities -> %s", len(df), parquet_path)
    return IdentityBankArtifacts(parquet_path, meta_json_path)


def load_identity_bank(parquet_path: Path) -> List[Identity]:
    if not parquet_path.exists():
        LOGGER.warning("Identity bank %s not found; starting empty", parquet_path)
        return []
    df = pd.read_parquet(parquet_path)
    identities: List[Identity] = []
    for _, row in df.iterrows():
        legacy = _normalize_embedding(row.get("legacy_vector"))
        raw_enrollment = row.get("enrollment")
        enrollment = None
        if isinstance(raw_enrollment, str) and raw_enrollment:
            enrollment = EnrollmentSet.from_dict(json.loads(raw_enrollment))
        identities.append(
            Identity(
                identity_id=str(row["identity_id"]),
                name=str(row["name"]),
                legacy_vector=legacy if legacy is not None and legacy.size else None,
                enrollment=enrollment,
                avatar_url=_optional_str(row.get("avatar_url")),
                last_check_in=_optional_float(row.get("last_check_in")),
            )
        )
    LOGGER.info("Loaded %d identities from %s", len(identities), parquet_path)
    return identities


def _optional_str(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return str(value)


def _optional_float(value) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return None if math.isnan(value) else value


def _normalize_embedding(raw) -> Optional[np.ndarray]:
    """Convert a parquet-loaded vector column into a 1D float32 vector."""
    if raw is None:
        return None
    if isinstance(raw, float) and math.isnan(raw):
        return None
    if isinstance(raw, np.ndarray):
        if raw.dtype == object or raw.ndim > 1:
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = raw.astype(np.float32)
    elif isinstance(raw, list):
        if raw and isinstance(raw[0], (list, tuple, np.ndarray)):
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = np.asarray(raw, dtype=np.float32)
    else:
        arr = np.asarray(raw, dtype=np.float32)
    return arr.reshape(-1).astype(np.float32)
