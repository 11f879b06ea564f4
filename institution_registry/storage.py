"""CSV persistence for the archive, override, marker, audit and registry tables."""

import logging
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd

from .errors import ConfigurationError
from .models import (
    ArchiveEntity,
    ManualOverride,
    MarkerRecord,
    MatchStatus,
    ReconciledEntity,
    column_names,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

RAW_MARKERS_FILE = "raw_markers.csv"
AUDIT_FILE = "marker_audit.csv"
TRAIL_FILE = "marker_trail.csv"
REGISTRY_FILE = "reconciled_registry.csv"
UNMATCHED_FILE = "unmatched_markers.csv"


def _read_table(path: PathLike, required: list[str]) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Table not found: {path}")
    df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding="utf-8")
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ConfigurationError(f"{path.name} is missing columns: {', '.join(missing)}")
    return df


def _text(value: Any) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def _number(value: Any) -> Optional[float]:
    value = (value or "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def load_archive(path: PathLike) -> list[ArchiveEntity]:
    df = _read_table(path, ["canonical_name"])
    entities = []
    for row in df.to_dict("records"):
        name = _text(row.get("canonical_name"))
        if not name:
            continue
        entities.append(ArchiveEntity(
            canonical_name=name,
            link=_text(row.get("link")) or "",
            religious_entity=_text(row.get("religious_entity")),
            location=_text(row.get("location")),
            years_operation=_text(row.get("years_operation")),
        ))
    logger.info(f"Loaded {len(entities)} archive entities from {path}")
    return entities


def load_overrides(path: PathLike) -> list[ManualOverride]:
    df = _read_table(path, ["marker_name", "canonical_name"])
    overrides = [
        ManualOverride(row["marker_name"].strip(), row["canonical_name"].strip())
        for row in df.to_dict("records")
        if row["marker_name"].strip() and row["canonical_name"].strip()
    ]
    logger.info(f"Loaded {len(overrides)} manual overrides from {path}")
    return overrides


def load_markers(path: PathLike) -> list[MarkerRecord]:
    df = _read_table(path, column_names(MarkerRecord))
    return [
        MarkerRecord(row["title"], _number(row["latitude"]), _number(row["longitude"]))
        for row in df.to_dict("records")
    ]



def load_registry(path: PathLike) -> list[ReconciledEntity]:
    """Reload a registry written by `save_reconciliation`."""
    df = _read_table(path, column_names(ReconciledEntity))
    entities = []
    for row in df.to_dict("records"):
        try:
            status = MatchStatus(row["match_status"].strip())
        except ValueError:
            raise ConfigurationError(
                f"Unknown match_status '{row['match_status']}' for '{row['canonical_name']}'"
            )
        entities.append(ReconciledEntity(
            canonical_name=row["canonical_name"],
            link=row["link"],
            religious_entity=_text(row["religious_entity"]),
            location=_text(row["location"]),
            years_operation=_text(row["years_operation"]),
            latitude=_number(row["latitude"]),
            longitude=_number(row["longitude"]),
            match_status=status,
            marker_name=_text(row["marker_name"]),
            distance=_number(row["distance"]),
            reason=_text(row["reason"]),
        ))
    logger.info(f"Loaded {len(entities)} registry rows from {path}")
    return entities


def write_table(df: pd.DataFrame, path: PathLike) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, encoding="utf-8")
    logger.info(f"Wrote {len(df)} rows to {path}")
    return path


def save_extraction(accumulator, output_dir: PathLike) -> dict[str, Path]:
    """Persist the raw marker, audit and trail tables of an extraction run."""
    output_dir = Path(output_dir)
    markers, audit, trail = accumulator.to_frames()
    return {
        "markers": write_table(markers, output_dir / RAW_MARKERS_FILE),
        "audit": write_table(audit, output_dir / AUDIT_FILE),
        "trail": write_table(trail, output_dir / TRAIL_FILE),
    }


def save_reconciliation(result, output_dir: PathLike) -> dict[str, Path]:
    output_dir = Path(output_dir)
    unmatched = pd.DataFrame({"marker_name": result.unmatched_markers})
    return {
        "registry": write_table(result.registry_frame(), output_dir / REGISTRY_FILE),
        "unmatched": write_table(unmatched, output_dir / UNMATCHED_FILE),
    }
