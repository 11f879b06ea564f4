"""
Tests for CSV persistence and the run report.
"""

import json

import pandas as pd
import pytest

from institution_registry.accumulator import RecordAccumulator
from institution_registry.errors import ConfigurationError
from institution_registry.models import ArchiveEntity, ManualOverride, MarkerRecord
from institution_registry.reconcile import reconcile
from institution_registry.report import build_report, write_report
from institution_registry.settings import DEFAULT_OVERRIDES_PATH
from institution_registry.storage import (
    REGISTRY_FILE,
    load_archive,
    load_markers,
    load_overrides,
    load_registry,
    save_extraction,
    save_reconciliation,
)


def test_load_archive_treats_blank_fields_as_absent(tmp_path):
    path = tmp_path / "archive.csv"
    pd.DataFrame({
        "canonical_name": ["Regina", "Amos (Saint-Marc-de-Figuery)", ""],
        "link": ["https://archive.example.org/regina", "", ""],
        "religious_entity": ["Presbyterian", "", ""],
        "location": ["Regina, SK", "Amos, QC", ""],
        "years_operation": ["1891-1910", "", ""],
    }).to_csv(path, index=False)

    entities = load_archive(path)

    assert entities == [
        ArchiveEntity("Regina", "https://archive.example.org/regina", "Presbyterian", "Regina, SK", "1891-1910"),
        ArchiveEntity("Amos (Saint-Marc-de-Figuery)", "", None, "Amos, QC", None),
    ]


def test_missing_columns_are_rejected(tmp_path):
    path = tmp_path / "overrides.csv"
    path.write_text("marker,name\nA,B\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_overrides(path)


def test_missing_file_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        load_archive(tmp_path / "nope.csv")


def test_bundled_override_table_loads():
    overrides = load_overrides(DEFAULT_OVERRIDES_PATH)

    assert ManualOverride("Kitimaat", "Kitimaat (Elizabeth Long Memorial Home for Girls)") in overrides


def test_extraction_tables_reload(tmp_path):
    acc = RecordAccumulator()
    acc.add_record(MarkerRecord("Canadian Residential Schools: Amos", 48.57, -78.12))

    paths = save_extraction(acc, tmp_path)

    assert load_markers(paths["markers"]) == [
        MarkerRecord("Canadian Residential Schools: Amos", 48.57, -78.12)
    ]
    assert paths["audit"].read_text(encoding="utf-8").startswith(
        "ordinal,title,latitude,longitude,reason,detail"
    )


def test_registry_and_report_written(tmp_path):
    archive = [ArchiveEntity("Amos (Saint-Marc-de-Figuery)"), ArchiveEntity("Regina")]
    markers = [
        MarkerRecord("Canadian Residential Schools: Amos", 48.57, -78.12),
        MarkerRecord("Canadian Residential Schools: Kitimaat", 54.05, -128.65),
    ]
    result = reconcile(archive, markers)

    save_reconciliation(result, tmp_path)
    registry = pd.read_csv(tmp_path / REGISTRY_FILE)
    assert list(registry["match_status"]) == ["automatic", "unmatched"]

    report = build_report(result=result)
    assert report["orphans"] == ["Kitimaat"]
    assert report["reconciliation"]["automatic"] == 1

    html_path = write_report(tmp_path / "report.html", "html", result=result)
    assert "Kitimaat" in html_path.read_text(encoding="utf-8")

    json_path = write_report(tmp_path / "report.json", "json", accumulator=RecordAccumulator(), result=result)
    assert json.loads(json_path.read_text(encoding="utf-8"))["extraction"]["processed"] == 0


def test_registry_reloads_with_match_status(tmp_path):
    archive = [
        ArchiveEntity("Amos (Saint-Marc-de-Figuery)", link="https://archive.example.org/amos",
                      religious_entity="Catholic", location="Amos, QC", years_operation="1955-1973"),
        ArchiveEntity("Regina"),
        ArchiveEntity("Kitimaat (Elizabeth Long Memorial Home for Girls)"),
    ]
    markers = [
        MarkerRecord("Canadian Residential Schools: Amos", 48.57, -78.12),
        MarkerRecord("Canadian Residential Schools: Kitimaat", 54.05, -128.65),
    ]
    result = reconcile(archive, markers, load_overrides(DEFAULT_OVERRIDES_PATH))

    paths = save_reconciliation(result, tmp_path)
    reloaded = load_registry(paths["registry"])

    assert reloaded == result.registry
    assert [e.match_status.value for e in reloaded] == ["automatic", "unmatched", "override"]


def test_registry_with_unknown_status_is_rejected(tmp_path):
    path = tmp_path / REGISTRY_FILE
    pd.DataFrame([{
        "canonical_name": "Regina", "link": "", "religious_entity": "", "location": "",
        "years_operation": "", "latitude": "", "longitude": "", "match_status": "guessed",
        "marker_name": "", "distance": "", "reason": "",
    }]).to_csv(path, index=False)

    with pytest.raises(ConfigurationError):
        load_registry(path)


def test_html_report_escapes_scraped_titles(tmp_path):
    acc = RecordAccumulator()
    result = reconcile([ArchiveEntity("Regina")], [MarkerRecord("<script>alert(1)</script>", 1.0, 2.0)])

    html = write_report(tmp_path / "report.html", "html", accumulator=acc, result=result).read_text(encoding="utf-8")

    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html
