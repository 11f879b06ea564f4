"""
Data model for the marker extraction and reconciliation pipeline.

Records are frozen dataclasses. Extraction outcomes form a small tagged
union (Success | PopupNotFound | FieldMissing | StaleElement) that the
recovery state machine branches on.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Optional, Union


class CoordinateField(str, Enum):
    LATITUDE = "latitude"
    LONGITUDE = "longitude"


class MatchStatus(str, Enum):
    AUTOMATIC = "automatic"
    OVERRIDE = "override"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class MarkerRecord:
    """One popup read: title plus coordinates"""
    title: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def dedup_key(self, precision: int = 6) -> tuple:
        return (
            self.title,
            None if self.latitude is None else round(self.latitude, precision),
            None if self.longitude is None else round(self.longitude, precision),
        )


@dataclass(frozen=True)
class Success:
    record: MarkerRecord


@dataclass(frozen=True)
class PopupNotFound:
    pass


@dataclass(frozen=True)
class FieldMissing:
    which: CoordinateField
    record: MarkerRecord


@dataclass(frozen=True)
class StaleElement:
    pass


ExtractionOutcome = Union[Success, PopupNotFound, FieldMissing, StaleElement]


@dataclass(frozen=True)
class AuditRow:
    """A marker that did not produce a complete record"""
    ordinal: int
    title: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class MarkerTrail:
    """Final state reached for one processed marker"""
    ordinal: int
    title: Optional[str]
    final_state: str
    recovery_cycles: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class ArchiveEntity:
    canonical_name: str
    link: str = ""
    religious_entity: Optional[str] = None
    location: Optional[str] = None
    years_operation: Optional[str] = None


@dataclass(frozen=True)
class MatchCandidate:
    archive_name: str
    marker_name: str
    distance: float


@dataclass(frozen=True)
class ManualOverride:
    marker_name: str
    canonical_name: str


@dataclass(frozen=True)
class ReconciledEntity:
    """Archive entity joined with at most one marker coordinate pair"""
    canonical_name: str
    link: str
    religious_entity: Optional[str]
    location: Optional[str]
    years_operation: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    match_status: MatchStatus
    marker_name: Optional[str] = None
    distance: Optional[float] = None
    reason: Optional[str] = None

    @property
    def is_geocoded(self) -> bool:
        return self.latitude is not None and self.longitude is not None


def column_names(record_type: type) -> list[str]:
    """Column order for persisted tables, following the dataclass field order."""
    return [f.name for f in fields(record_type)]


def as_row(record: Any) -> dict[str, Any]:
    row = {}
    for f in fields(record):
        value = getattr(record, f.name)
        row[f.name] = value.value if isinstance(value, Enum) else value
    return row
