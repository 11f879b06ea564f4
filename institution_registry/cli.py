#!/usr/bin/env python3
"""
Institution Registry command line

Extracts marker coordinates from the institutions map and reconciles them
with the archive's canonical institution list.

Usage:
    # Extract every marker with a local headless Chromium
    institution-registry --extract --map-url https://example.org/map

    # Extract through a remote Selenium / WebDriver server
    institution-registry --extract --driver webdriver --webdriver-url http://localhost:4444

    # Reconcile a previous extraction with the archive table, HTML report
    institution-registry --reconcile --archive archive.csv --report html

    # Both in one run
    institution-registry --extract --reconcile --archive archive.csv

Requirements:
    pip install playwright httpx pandas jellyfish jinja2
    playwright install chromium
"""

import argparse
import asyncio
import logging
from pathlib import Path

from .drivers import PlaywrightDriver, WebDriverSession
from .errors import RegistryError
from .extraction import ExtractionSession
from .reconcile import reconcile
from .report import write_report
from .settings import (
    DEFAULT_OUTPUT_DIR,
    DEFAULT_OVERRIDES_PATH,
    DEFAULT_WEBDRIVER_URL,
    MATCH_TOLERANCE,
    MAX_RECOVERY_CYCLES,
    POPUP_TIMEOUT,
    ExtractionSettings,
    ReconciliationSettings,
)
from .storage import (
    RAW_MARKERS_FILE,
    load_archive,
    load_markers,
    load_overrides,
    save_extraction,
    save_reconciliation,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_driver(args):
    if args.driver == "webdriver":
        return WebDriverSession(args.webdriver_url, browser_name=args.browser, headless=not args.headful)
    return PlaywrightDriver(headless=not args.headful)


async def run_extraction(args, output_dir: Path):
    settings = ExtractionSettings(
        map_url=args.map_url or "",
        popup_timeout=args.popup_timeout,
        max_recovery_cycles=args.max_recovery_cycles,
        screenshot_dir=output_dir / "screenshots" if args.screenshots else None,
        limit=args.limit,
    )
    async with build_driver(args) as driver:
        session = ExtractionSession(driver, settings)
        try:
            await session.run()
        finally:
            # Partial tables survive cancellation and driver errors
            save_extraction(session.accumulator, output_dir)
    return session.accumulator


def run_reconciliation(args, output_dir: Path, accumulator=None):
    if not args.archive:
        raise RegistryError("--archive is required for --reconcile")

    archive = load_archive(args.archive)
    if accumulator is not None:
        markers = list(accumulator.records)
    else:
        markers = load_markers(args.markers or output_dir / RAW_MARKERS_FILE)
    overrides = load_overrides(args.overrides) if Path(args.overrides).exists() else []

    result = reconcile(
        archive, markers, overrides,
        ReconciliationSettings(tolerance=args.tolerance),
    )
    save_reconciliation(result, output_dir)
    return result


async def main():
    parser = argparse.ArgumentParser(
        description="Extract institution markers from the map and reconcile them with the archive"
    )
    parser.add_argument(
        "--extract", "-e",
        action="store_true",
        help="Run the browser marker extraction pass"
    )
    parser.add_argument(
        "--reconcile", "-r",
        action="store_true",
        help="Reconcile marker names with the archive table"
    )
    parser.add_argument(
        "--map-url",
        help="Map page URL (default: $REGISTRY_MAP_URL)"
    )
    parser.add_argument(
        "--driver",
        choices=["playwright", "webdriver"],
        default="playwright",
        help="Browser backend (default: playwright)"
    )
    parser.add_argument(
        "--webdriver-url",
        default=DEFAULT_WEBDRIVER_URL,
        help=f"Remote WebDriver endpoint (default: {DEFAULT_WEBDRIVER_URL})"
    )
    parser.add_argument(
        "--browser",
        default="firefox",
        help="Browser name requested from the WebDriver server"
    )
    parser.add_argument(
        "--headful",
        action="store_true",
        help="Show the browser window"
    )
    parser.add_argument(
        "--popup-timeout",
        type=float,
        default=POPUP_TIMEOUT,
        help=f"Seconds to wait for a popup (default: {POPUP_TIMEOUT})"
    )
    parser.add_argument(
        "--max-recovery-cycles",
        type=int,
        default=MAX_RECOVERY_CYCLES,
        help=f"Zoom-in retries per marker (default: {MAX_RECOVERY_CYCLES})"
    )
    parser.add_argument(
        "--limit",
        type=int,
        help="Only process the first N markers"
    )
    parser.add_argument(
        "--screenshots",
        action="store_true",
        help="Save a screenshot for every permanently failed marker"
    )
    parser.add_argument(
        "--archive", "-a",
        help="Archive entity CSV (canonical_name, link, religious_entity, location, years_operation)"
    )
    parser.add_argument(
        "--markers",
        help=f"Raw marker CSV to reconcile (default: <output-dir>/{RAW_MARKERS_FILE})"
    )
    parser.add_argument(
        "--overrides",
        default=str(DEFAULT_OVERRIDES_PATH),
        help="Manual override CSV (marker_name, canonical_name)"
    )
    parser.add_argument(
        "--tolerance", "-t",
        type=float,
        default=MATCH_TOLERANCE,
        help=f"Maximum Jaro-Winkler distance for a match (default: {MATCH_TOLERANCE})"
    )
    parser.add_argument(
        "--output-dir", "-o",
        default=str(DEFAULT_OUTPUT_DIR),
        help=f"Directory for output tables (default: {DEFAULT_OUTPUT_DIR})"
    )
    parser.add_argument(
        "--report",
        choices=["json", "html"],
        help="Write a run report in this format"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not (args.extract or args.reconcile):
        parser.print_help()
        return

    output_dir = Path(args.output_dir)
    accumulator = None
    result = None

    try:
        if args.extract:
            accumulator = await run_extraction(args, output_dir)
        if args.reconcile:
            result = run_reconciliation(args, output_dir, accumulator)
    except RegistryError as e:
        logger.error(str(e))
        raise SystemExit(1)

    if args.report:
        report_path = write_report(
            output_dir / f"registry_report.{args.report}", args.report,
            accumulator=accumulator, result=result,
        )
        print(f"\nReport generated: {report_path}")

    if accumulator is not None:
        summary = accumulator.summary()
        print(f"\nExtraction: {summary['extracted']}/{summary['processed']} markers read, "
              f"{summary['recovered']} recovered by zoom")
        for reason, count in summary["failures"].items():
            print(f"  {reason}: {count}")
    if result is not None:
        summary = result.summary()
        print(f"\nRegistry: {summary['automatic']} automatic, {summary['override']} override, "
              f"{summary['unmatched']} unmatched of {summary['archive_entities']}")
        if result.unmatched_markers:
            print("Unmatched map markers:")
            for name in result.unmatched_markers:
                print(f"  {name}")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
