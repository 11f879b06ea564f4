"""Geocoded institution registry: map marker extraction and archive reconciliation."""

from .models import (
    ArchiveEntity,
    CoordinateField,
    FieldMissing,
    ManualOverride,
    MarkerRecord,
    MatchCandidate,
    MatchStatus,
    PopupNotFound,
    ReconciledEntity,
    StaleElement,
    Success,
)
from .reconcile import reconcile

__version__ = "1.0.0"
