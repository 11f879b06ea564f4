"""Run report: JSON summary or an HTML audit page rendered with jinja2."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from jinja2 import Environment

from .accumulator import RecordAccumulator
from .reconcile import ReconciliationResult

logger = logging.getLogger(__name__)

HTML_TEMPLATE = Environment(autoescape=True).from_string('''
<!DOCTYPE html>
<html>
<head>
    <title>Institution Registry Report</title>
    <style>
        body { font-family: Arial, sans-serif; margin: 20px; }
        .summary { background: #f4f4f4; padding: 20px; border-radius: 8px; margin-bottom: 20px; }
        .stat { display: inline-block; margin-right: 30px; }
        .stat-value { font-size: 24px; font-weight: bold; }
        .stat-label { color: #666; }
        table { width: 100%; border-collapse: collapse; margin-bottom: 20px; }
        th, td { padding: 8px; text-align: left; border-bottom: 1px solid #ddd; }
        th { background: #eee; }
        .ok { color: #2e7d32; }
        .bad { color: #c62828; }
        .warn { color: #ef6c00; }
    </style>
</head>
<body>
    <h1>Institution Registry Report</h1>
    <p>Generated: {{ generated_at }}</p>

    {% if extraction %}
    <h2>Marker extraction</h2>
    <div class="summary">
        <div class="stat"><div class="stat-value">{{ extraction.processed }}</div><div class="stat-label">Processed</div></div>
        <div class="stat"><div class="stat-value ok">{{ extraction.extracted }}</div><div class="stat-label">Extracted</div></div>
        <div class="stat"><div class="stat-value warn">{{ extraction.recovered }}</div><div class="stat-label">Recovered by zoom</div></div>
        <div class="stat"><div class="stat-value">{{ extraction.duplicates }}</div><div class="stat-label">Duplicates</div></div>
    </div>
    {% if audit %}
    <table>
        <tr><th>#</th><th>Title</th><th>Latitude</th><th>Longitude</th><th>Reason</th><th>Detail</th></tr>
        {% for row in audit %}
        <tr>
            <td>{{ row.ordinal }}</td>
            <td>{{ row.title or "" }}</td>
            <td>{{ row.latitude if row.latitude is not none else "NA" }}</td>
            <td>{{ row.longitude if row.longitude is not none else "NA" }}</td>
            <td class="bad">{{ row.reason }}</td>
            <td>{{ row.detail }}</td>
        </tr>
        {% endfor %}
    </table>
    {% endif %}
    {% endif %}

    {% if reconciliation %}
    <h2>Reconciliation</h2>
    <div class="summary">
        <div class="stat"><div class="stat-value">{{ reconciliation.archive_entities }}</div><div class="stat-label">Archive entities</div></div>
        <div class="stat"><div class="stat-value ok">{{ reconciliation.automatic }}</div><div class="stat-label">Automatic</div></div>
        <div class="stat"><div class="stat-value ok">{{ reconciliation.override }}</div><div class="stat-label">Override</div></div>
        <div class="stat"><div class="stat-value bad">{{ reconciliation.unmatched }}</div><div class="stat-label">Unmatched</div></div>
    </div>
    {% if ambiguous %}
    <h3>Ambiguous ties</h3>
    <table>
        <tr><th>Archive name</th><th>Marker name</th><th>Distance</th></tr>
        {% for pair in ambiguous %}
        <tr><td>{{ pair.archive_name }}</td><td>{{ pair.marker_name }}</td><td class="warn">{{ "%.3f"|format(pair.distance) }}</td></tr>
        {% endfor %}
    </table>
    {% endif %}
    {% if orphans %}
    <h3>Map markers with no archive counterpart</h3>
    <ul>
        {% for name in orphans %}<li>{{ name }}</li>{% endfor %}
    </ul>
    {% endif %}
    {% endif %}
</body>
</html>
''')


def build_report(accumulator: Optional[RecordAccumulator] = None,
                 result: Optional[ReconciliationResult] = None) -> dict:
    report: dict = {"generated_at": datetime.now().isoformat()}
    if accumulator is not None:
        report["extraction"] = accumulator.summary()
        report["audit"] = [asdict(row) for row in accumulator.audit]
    if result is not None:
        report["reconciliation"] = result.summary()
        report["ambiguous"] = [asdict(pair) for pair in result.ambiguous]
        report["orphans"] = list(result.unmatched_markers)
    return report


def write_report(path: Path, format: str = "json",
                 accumulator: Optional[RecordAccumulator] = None,
                 result: Optional[ReconciliationResult] = None) -> Path:
    report = build_report(accumulator, result)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if format == "html":
        html = HTML_TEMPLATE.render(
            generated_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            extraction=report.get("extraction"),
            audit=report.get("audit", []),
            reconciliation=report.get("reconciliation"),
            ambiguous=report.get("ambiguous", []),
            orphans=report.get("orphans", []),
        )
        path.write_text(html, encoding="utf-8")
    else:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, ensure_ascii=False)

    logger.info(f"{format.upper()} report saved: {path}")
    return path
