"""
Entity reconciliation between the archive's canonical names and the map's
marker titles.

    1. cross product of names, distance = 1 - Jaro-Winkler similarity,
       pairs above the tolerance dropped
    2. per archive name, keep the minimum-distance candidates
    3. per marker name, keep the minimum-distance candidates
    4. pairs passing both filters are accepted; a name left in more than one
       such pair is an unresolved tie and goes to review instead
    5. manual overrides are unioned in and displace automatic pairs
    6. archive-keyed join: each archive entity gets at most one coordinate pair

The engine is a pure function of its inputs.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import jellyfish
import pandas as pd

from .errors import AmbiguousMatchError
from .models import (
    ArchiveEntity,
    ManualOverride,
    MarkerRecord,
    MatchCandidate,
    MatchStatus,
    ReconciledEntity,
    as_row,
    column_names,
)
from .settings import ReconciliationSettings

logger = logging.getLogger(__name__)

CANDIDATE_COLUMNS = ["archive_name", "marker_name", "distance"]


def strip_prefix(name: str, prefix: str) -> str:
    name = name.strip()
    marker = prefix.strip()
    if marker and name.startswith(marker):
        name = name[len(marker):]
    return name.strip()


def name_distance(archive_name: str, marker_name: str) -> float:
    """Jaro-Winkler distance in [0, 1]; 0 means identical."""
    return 1.0 - jellyfish.jaro_winkler_similarity(archive_name, marker_name)


def candidate_pairs(archive_names: Iterable[str], marker_names: Iterable[str],
                    tolerance: float) -> pd.DataFrame:
    """Cross product of names with distances, limited to `tolerance`."""
    left = pd.DataFrame({"archive_name": pd.unique(pd.Series(list(archive_names), dtype=object))})
    right = pd.DataFrame({"marker_name": pd.unique(pd.Series(list(marker_names), dtype=object))})
    if left.empty or right.empty:
        return pd.DataFrame(columns=CANDIDATE_COLUMNS)

    pairs = left.merge(right, how="cross")
    pairs["distance"] = [
        name_distance(a, m) for a, m in zip(pairs["archive_name"], pairs["marker_name"])
    ]
    pairs = pairs[pairs["distance"] <= tolerance]
    return pairs.sort_values(CANDIDATE_COLUMNS).reset_index(drop=True)


def mutual_minimum(candidates: pd.DataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split candidates into (accepted, ambiguous).

    A pair survives when its distance is the minimum among all candidates of
    its archive name and also among all candidates of its marker name. If a
    name still takes part in several surviving pairs, those pairs are ties and
    none of them is accepted.
    """
    if candidates.empty:
        empty = pd.DataFrame(columns=CANDIDATE_COLUMNS)
        return empty, empty.copy()

    archive_min = candidates.groupby("archive_name")["distance"].transform("min")
    marker_min = candidates.groupby("marker_name")["distance"].transform("min")
    survivors = candidates[
        (candidates["distance"] == archive_min) & (candidates["distance"] == marker_min)
    ]

    archive_counts = survivors.groupby("archive_name")["marker_name"].transform("size")
    marker_counts = survivors.groupby("marker_name")["archive_name"].transform("size")
    tied = (archive_counts > 1) | (marker_counts > 1)

    accepted = survivors[~tied].reset_index(drop=True)
    ambiguous = survivors[tied].reset_index(drop=True)
    return accepted, ambiguous


def _to_candidates(frame: pd.DataFrame) -> list[MatchCandidate]:
    return [
        MatchCandidate(row.archive_name, row.marker_name, float(row.distance))
        for row in frame.itertuples(index=False)
    ]


@dataclass
class ReconciliationResult:
    candidates: pd.DataFrame
    accepted: list[MatchCandidate]
    ambiguous: list[MatchCandidate]
    unmatched_markers: list[str]
    overrides_applied: list[ManualOverride] = field(default_factory=list)
    registry: list[ReconciledEntity] = field(default_factory=list)

    def match_map(self) -> dict[str, str]:
        """canonical_name -> marker_name for every geocoded registry entry."""
        return {e.canonical_name: e.marker_name for e in self.registry if e.marker_name and e.is_geocoded}

    def registry_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [as_row(e) for e in self.registry], columns=column_names(ReconciledEntity)
        )

    def geocoded_frame(self) -> pd.DataFrame:
        frame = self.registry_frame()
        return frame[frame["latitude"].notna() & frame["longitude"].notna()].reset_index(drop=True)

    def summary(self) -> dict:
        statuses = pd.Series([e.match_status.value for e in self.registry], dtype=object)
        return {
            "archive_entities": len(self.registry),
            "automatic": int((statuses == MatchStatus.AUTOMATIC.value).sum()),
            "override": int((statuses == MatchStatus.OVERRIDE.value).sum()),
            "unmatched": int((statuses == MatchStatus.UNMATCHED.value).sum()),
            "ambiguous_pairs": len(self.ambiguous),
            "orphan_markers": len(self.unmatched_markers),
        }


def _marker_lookup(markers: Sequence[MarkerRecord], prefix: str) -> dict[str, MarkerRecord]:
    lookup: dict[str, MarkerRecord] = {}
    for record in markers:
        name = strip_prefix(record.title, prefix)
        if not record.is_complete:
            logger.warning(f"Marker '{name}' has incomplete coordinates, excluded from matching")
            continue
        if name in lookup:
            if (record.latitude, record.longitude) != (lookup[name].latitude, lookup[name].longitude):
                logger.warning(
                    f"Marker '{name}' appears more than once with different coordinates; "
                    f"keeping ({lookup[name].latitude}, {lookup[name].longitude})"
                )
            continue
        lookup[name] = record
    return lookup


def reconcile(
    archive: Sequence[ArchiveEntity],
    markers: Sequence[MarkerRecord],
    overrides: Sequence[ManualOverride] = (),
    settings: Optional[ReconciliationSettings] = None,
) -> ReconciliationResult:
    settings = settings or ReconciliationSettings()
    sentinel = settings.unknown_institution.casefold()

    lookup = _marker_lookup(markers, settings.marker_prefix)
    archive_names = [
        e.canonical_name for e in archive if e.canonical_name.casefold() != sentinel
    ]

    candidates = candidate_pairs(archive_names, lookup.keys(), settings.tolerance)
    accepted_frame, ambiguous_frame = mutual_minimum(candidates)
    logger.info(
        f"{len(candidates)} candidate pairs within {settings.tolerance}, "
        f"{len(accepted_frame)} accepted, {len(ambiguous_frame)} ambiguous"
    )

    # Overrides: marker name -> canonical name, both sides one-to-one
    override_by_archive: dict[str, ManualOverride] = {}
    override_markers: set[str] = set()
    applied: list[ManualOverride] = []
    known_archive = {e.canonical_name for e in archive}
    for override in overrides:
        marker_name = strip_prefix(override.marker_name, settings.marker_prefix)
        normalised = ManualOverride(marker_name, override.canonical_name)
        if override.canonical_name not in known_archive or override.canonical_name.casefold() == sentinel:
            logger.warning(f"Override target '{override.canonical_name}' is not in the archive, ignored")
            continue
        if override.canonical_name in override_by_archive:
            logger.warning(
                f"Duplicate override for '{override.canonical_name}' ignored, "
                f"keeping marker '{override_by_archive[override.canonical_name].marker_name}'"
            )
            continue
        if marker_name in override_markers:
            logger.warning(f"Marker '{marker_name}' already overridden, ignoring second target")
            continue
        if marker_name not in lookup:
            logger.warning(f"Override marker '{marker_name}' was not found on the map")
        override_by_archive[override.canonical_name] = normalised
        override_markers.add(marker_name)
        applied.append(normalised)

    displaced_archive: set[str] = set()
    if not accepted_frame.empty:
        displaced = accepted_frame["archive_name"].isin(list(override_by_archive)) | \
            accepted_frame["marker_name"].isin(list(override_markers))
        for row in accepted_frame[displaced].itertuples(index=False):
            logger.info(f"Override replaces automatic match '{row.archive_name}' <- '{row.marker_name}'")
            displaced_archive.add(row.archive_name)
        accepted_frame = accepted_frame[~displaced].reset_index(drop=True)

    accepted = _to_candidates(accepted_frame)
    ambiguous = _to_candidates(ambiguous_frame)
    for pair in ambiguous:
        logger.warning(
            f"{AmbiguousMatchError.__name__}: '{pair.archive_name}' ~ '{pair.marker_name}' "
            f"tied at {pair.distance:.3f}, left for review"
        )

    matched_markers = {c.marker_name for c in accepted} | override_markers
    unmatched_markers = sorted(name for name in lookup if name not in matched_markers)
    for name in unmatched_markers:
        logger.warning(f"Orphan map marker with no archive counterpart: '{name}'")

    accepted_by_archive = {c.archive_name: c for c in accepted}
    ambiguous_by_archive: dict[str, list[str]] = {}
    for pair in ambiguous:
        ambiguous_by_archive.setdefault(pair.archive_name, []).append(pair.marker_name)

    registry: list[ReconciledEntity] = []
    seen: set[str] = set()
    for entity in archive:
        name = entity.canonical_name
        if name in seen:
            logger.warning(f"Duplicate archive entity '{name}' skipped")
            continue
        seen.add(name)

        marker_name = None
        distance = None
        status = MatchStatus.UNMATCHED
        reason = None

        if name.casefold() == sentinel:
            reason = "placeholder entry, not a mappable institution"
        elif name in override_by_archive:
            marker_name = override_by_archive[name].marker_name
            if marker_name in lookup:
                status = MatchStatus.OVERRIDE
                distance = name_distance(name, marker_name)
            else:
                reason = f"override marker '{marker_name}' not found on map"
        elif name in accepted_by_archive:
            match = accepted_by_archive[name]
            marker_name = match.marker_name
            distance = match.distance
            status = MatchStatus.AUTOMATIC
        elif name in ambiguous_by_archive:
            reason = f"{AmbiguousMatchError.__name__}: tied between " + ", ".join(
                sorted(ambiguous_by_archive[name])
            )
        elif name in displaced_archive:
            reason = "automatic match displaced by manual override"
        else:
            reason = "no map marker within tolerance"

        record = lookup.get(marker_name) if status is not MatchStatus.UNMATCHED else None
        registry.append(ReconciledEntity(
            canonical_name=name,
            link=entity.link,
            religious_entity=entity.religious_entity,
            location=entity.location,
            years_operation=entity.years_operation,
            latitude=record.latitude if record else None,
            longitude=record.longitude if record else None,
            match_status=status,
            marker_name=marker_name,
            distance=distance,
            reason=reason,
        ))

    result = ReconciliationResult(
        candidates=candidates,
        accepted=accepted,
        ambiguous=ambiguous,
        unmatched_markers=unmatched_markers,
        overrides_applied=applied,
        registry=registry,
    )
    summary = result.summary()
    logger.info(
        f"Registry: {summary['automatic']} automatic, {summary['override']} override, "
        f"{summary['unmatched']} unmatched of {summary['archive_entities']}"
    )
    return result
