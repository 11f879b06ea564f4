"""Append-only accumulation of extraction results into the raw and audit tables."""

import logging
from collections import Counter
from typing import Optional

import pandas as pd

from .errors import DataIntegrityWarning, PermanentExtractionFailure
from .models import (
    AuditRow,
    FieldMissing,
    MarkerRecord,
    MarkerTrail,
    Success,
    as_row,
    column_names,
)
from .recovery import RecoveryResult

logger = logging.getLogger(__name__)


class RecordAccumulator:
    """Deduplicates successful reads and keeps an audit row for everything else"""

    def __init__(self, precision: int = 6):
        self.precision = precision
        self.records: list[MarkerRecord] = []
        self.audit: list[AuditRow] = []
        self.trail: list[MarkerTrail] = []
        self.duplicates = 0
        self._seen: set[tuple] = set()

    def add_record(self, record: MarkerRecord) -> bool:
        """Append a complete record unless an identical one is already present."""
        key = record.dedup_key(self.precision)
        if key in self._seen:
            self.duplicates += 1
            logger.debug(f"Duplicate marker read skipped: {record.title}")
            return False
        self._seen.add(key)
        self.records.append(record)
        return True

    def add(self, result: RecoveryResult) -> Optional[AuditRow]:
        outcome = result.outcome
        title: Optional[str] = None
        audit_row = None

        if isinstance(outcome, Success) and outcome.record.is_complete:
            title = outcome.record.title
            self.add_record(outcome.record)
        elif isinstance(outcome, FieldMissing):
            title = outcome.record.title
            audit_row = AuditRow(
                ordinal=result.ordinal,
                title=title,
                latitude=outcome.record.latitude,
                longitude=outcome.record.longitude,
                reason=DataIntegrityWarning.__name__,
                detail=result.detail or f"{outcome.which.value} missing",
            )
        else:
            audit_row = AuditRow(
                ordinal=result.ordinal,
                title=None,
                latitude=None,
                longitude=None,
                reason=result.reason or PermanentExtractionFailure.__name__,
                detail=result.detail or type(outcome).__name__,
            )

        if audit_row is not None:
            self.audit.append(audit_row)
        self.trail.append(MarkerTrail(
            ordinal=result.ordinal,
            title=title,
            final_state=result.final_state.value if result.final_state else "",
            recovery_cycles=result.recovery_cycles,
            reason=audit_row.reason if audit_row else None,
        ))
        return audit_row

    def summary(self) -> dict:
        reasons = Counter(row.reason for row in self.audit)
        return {
            "processed": len(self.trail),
            "extracted": len(self.records),
            "recovered": sum(
                1 for t in self.trail if t.reason is None and t.recovery_cycles > 0
            ),
            "duplicates": self.duplicates,
            "failures": dict(reasons),
        }

    def to_frames(self) -> tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        """Raw marker table, audit table and trail as DataFrames."""
        markers = pd.DataFrame(
            [as_row(r) for r in self.records], columns=column_names(MarkerRecord)
        )
        audit = pd.DataFrame([as_row(r) for r in self.audit], columns=column_names(AuditRow))
        trail = pd.DataFrame([as_row(r) for r in self.trail], columns=column_names(MarkerTrail))
        return markers, audit, trail
