#!/usr/bin/env python3
"""
TrendView - Command-line entry point

Loads the tag catalog from the historian database and runs one trend fetch
through the cache-aware pipeline.

Usage:
    python main.py --list-tags
    python main.py --list-tags --search boiler
    python main.py --tags 3,7 --start "2024-01-01 00:00" --end "2024-01-01 06:00"
    python main.py --tags 3 --range "last 6 hours" --max-points 500
    python main.py --db /path/to/trend.db --tags 3 --range 2024-01-15 --verbose
"""

import argparse
import sys
from pathlib import Path


def parse_tag_ids(text: str) -> list[int]:
    """Parse "3,7, 12" into [3, 7, 12]."""
    try:
        return [int(part) for part in text.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Tag ids must be comma-separated integers: '{text}'")


def print_tags(catalog, search: str = "") -> None:
    """Print the catalog (optionally filtered) as a table."""
    tags = catalog.search(search) if search else catalog.tags()
    print(f"{'ID':>6}  {'Table':>5}  {'Col':>3}  {'Group':<20}  Name")
    print("-" * 60)
    for tag in tags:
        print(f"{tag.id:>6}  {tag.table_number:>5}  {tag.column_position:>3}  "
              f"{tag.group_name[:20]:<20}  {tag.display_name}")
    print(f"\n{len(tags)} of {len(catalog)} tags")
    if catalog.rejected:
        print(f"{len(catalog.rejected)} catalog rows rejected (see log)")


def print_outcome(outcome) -> None:
    """Print per-tag point counts, errors, and warnings."""
    print(f"Request {outcome.request_id}: {outcome.state.value}")
    print(f"  path: {' -> '.join(s.value for s in outcome.history)}")
    for series in outcome.series.values():
        s = series.summary()
        print(f"  [{s['tag_id']}] {s['name']}: {s['num_points']} points "
              f"({s['num_sampled']} sampled, from {s['source']})"
              + (f" {s['time_min']} .. {s['time_max']}" if s["num_points"] else ""))
    for error in outcome.errors:
        print(f"  ERROR: {error}")
    for warning in outcome.warnings:
        print(f"  WARNING: {warning}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="TrendView historian data access")
    parser.add_argument(
        "--tags", "-t",
        type=parse_tag_ids,
        default=None,
        help="Comma-separated tag ids to fetch (e.g. 3,7)",
    )
    parser.add_argument("--start", default=None, help="Window start, e.g. '2024-01-01 00:00'")
    parser.add_argument("--end", default=None, help="Window end, e.g. '2024-01-01 06:00'")
    parser.add_argument(
        "--range", "-r",
        dest="time_range",
        default=None,
        help="Time expression instead of --start/--end, e.g. 'last 6 hours'",
    )
    parser.add_argument(
        "--max-points", "-n",
        type=int,
        default=None,
        help="Maximum points per tag after sampling (default: chart.max_data_points)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to a sqlite historian database (overrides config)",
    )
    parser.add_argument("--list-tags", action="store_true", help="List the tag catalog and exit")
    parser.add_argument("--search", default="", help="Filter --list-tags by name or group")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug output on the console",
    )
    args = parser.parse_args(argv)

    from service.logging import setup_logging, log_error
    setup_logging(verbose=args.verbose)

    from historian.connection import SqliteConnector, build_connector
    from historian.errors import HistorianError
    from service.pipeline import build_service
    from service.progress import CallbackProgressSink
    from service.time_utils import TimeRangeError, TimeRange, parse_datetime, parse_time_range

    def show_progress(message, percent):
        if args.verbose:
            pct = f"{percent:5.1f}%" if percent is not None else "  ... "
            print(f"  {pct} {message}", file=sys.stderr)

    try:
        connector = SqliteConnector(args.db) if args.db else build_connector()
        if not connector.check_connectivity():
            print("Error: cannot reach the historian database.", file=sys.stderr)
            return 2
        service = build_service(connector, progress=CallbackProgressSink(show_progress))
    except HistorianError as e:
        log_error("Startup failed", exc=e)
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.list_tags:
        print_tags(service.catalog, args.search)
        return 0

    if not args.tags:
        parser.error("--tags is required unless --list-tags is given")
    try:
        if args.time_range:
            window = parse_time_range(args.time_range)
        elif args.start and args.end:
            window = TimeRange(parse_datetime(args.start), parse_datetime(args.end))
        else:
            parser.error("give --start and --end, or --range")
    except (TimeRangeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        with service:
            outcome = service.fetch(args.tags, window.start, window.end, max_points=args.max_points)
    except HistorianError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print_outcome(outcome)
    return 0 if outcome.series else 1


if __name__ == "__main__":
    sys.exit(main())
