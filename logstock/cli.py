"""
Logstock CLI - inspect and maintain the capture store.

Usage:
    python -m logstock list                 - List captured segments in the manifest
    python -m logstock show                 - Print captured content without consuming it
    python -m logstock compare <fixture>    - Drain captured content and diff it against a fixture
    python -m logstock prune [--keep N]     - Evict old segments and remove orphaned files

Paths and defaults come from LOGSTOCK_* environment variables unless
overridden with --data-path / --fixture-path.
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from logstock.capture.filters import FilterPipeline, build_filters
from logstock.capture.fixtures import Comparison, FixtureComparator
from logstock.capture.manifest import ManifestStore
from logstock.exceptions import InvalidFixtureNameError
from logstock.settings import LogstockSettings


# ANSI color codes
class Colors:
    RESET = '\033[0m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    CYAN = '\033[96m'
    BOLD = '\033[1m'
    DIM = '\033[2m'


def load_settings(args) -> LogstockSettings:
    """Settings from the environment, with command line overrides."""
    overrides = {}
    if args.data_path:
        overrides['data_path'] = args.data_path
    if args.fixture_path:
        overrides['fixture_path'] = args.fixture_path
    try:
        return LogstockSettings(**overrides)
    except ValidationError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)


def get_store(settings: LogstockSettings) -> ManifestStore:
    return ManifestStore(
        settings.data_path,
        file_mode=settings.file_mode,
        history_size=settings.history_size,
    )


def format_diff_line(line: str, color: bool = True) -> str:
    """Colorize one line of a unified diff."""
    if not color:
        return line
    if line.startswith('+++') or line.startswith('---'):
        return f"{Colors.BOLD}{line}{Colors.RESET}"
    if line.startswith('@@'):
        return f"{Colors.CYAN}{line}{Colors.RESET}"
    if line.startswith('+'):
        return f"{Colors.GREEN}{line}{Colors.RESET}"
    if line.startswith('-'):
        return f"{Colors.RED}{line}{Colors.RESET}"
    return line


def cmd_list(args):
    """List manifest entries with record counts and level histograms."""
    settings = load_settings(args)
    manifest = get_store(settings).load()

    if not manifest:
        print("No captured segments.")
        return

    print(f"{Colors.BOLD}{'Tag':<36} {'Records':<9} {'Bytes':<9} {'Captured':<20} {'Levels'}{Colors.RESET}")
    print("-" * 100)

    for tag, summary in manifest.items():
        captured = datetime.fromtimestamp(summary.created_at).strftime('%Y-%m-%d %H:%M:%S')
        levels = ', '.join(f"{name}={count}" for name, count in sorted(summary.levels.items()))
        print(f"{tag:<36} {summary.records:<9} {summary.size:<9} {captured:<20} {levels}")

    print(f"\n{Colors.DIM}Total: {len(manifest)} segment(s){Colors.RESET}")


def cmd_show(args):
    """Print captured content in manifest order without consuming it."""
    settings = load_settings(args)
    for tag, text in get_store(settings).peek():
        if args.tags:
            print(f"{Colors.DIM}# {tag}{Colors.RESET}")
        sys.stdout.write(text)


def cmd_compare(args):
    """Drain captured content and compare it against a fixture."""
    settings = load_settings(args)
    store = get_store(settings)
    comparator = FixtureComparator(
        store,
        settings.fixture_path,
        file_mode=settings.file_mode,
        dir_mode=settings.dir_mode,
    )
    filters = FilterPipeline(build_filters(settings.filters))
    rewrite = args.rewrite or settings.rewrite

    try:
        result = comparator.get_content(args.fixture, rewrite=rewrite, filters=filters)
    except InvalidFixtureNameError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    if not isinstance(result, Comparison):
        print(f"{Colors.YELLOW}Recorded new fixture {result.fixture_path}{Colors.RESET}")
        sys.exit(0)

    if result.matches:
        print(f"{Colors.GREEN}✓ Captured logs match {args.fixture}{Colors.RESET}")
        sys.exit(0)

    color = not args.no_color
    print(f"{Colors.BOLD}Differences from fixture '{args.fixture}':{Colors.RESET}\n")
    for line in result.diff().splitlines():
        print(format_diff_line(line, color=color))
    sys.exit(1)


def cmd_prune(args):
    """Evict old segments and remove orphaned segment files."""
    settings = load_settings(args)
    store = get_store(settings)
    keep = args.keep if args.keep is not None else settings.history_size

    evicted = store.evict_oldest(keep)
    removed = store.remove_orphans(min_age=args.min_age)

    print(f"Evicted {len(evicted)} segment(s), removed {len(removed)} orphaned file(s)")
    for tag in evicted:
        print(f"  - {tag}")
    for path in removed:
        print(f"  - {path.name} {Colors.DIM}(orphan){Colors.RESET}")


def main(argv=None):
    """Main entry point for the logstock CLI."""
    parser = argparse.ArgumentParser(
        description='Logstock CLI - inspect captured logs and compare them with fixtures',
        prog='python -m logstock'
    )
    parser.add_argument('--data-path', type=Path, help='Capture storage directory (default: LOGSTOCK_DATA_PATH)')
    parser.add_argument('--fixture-path', type=Path, help='Fixture directory (default: LOGSTOCK_FIXTURE_PATH)')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # list command
    list_parser = subparsers.add_parser('list', help='List captured segments in the manifest')
    list_parser.set_defaults(func=cmd_list)

    # show command
    show_parser = subparsers.add_parser('show', help='Print captured content without consuming it')
    show_parser.add_argument('--tags', action='store_true', help='Print a header line before each segment')
    show_parser.set_defaults(func=cmd_show)

    # compare command
    compare_parser = subparsers.add_parser('compare', help='Drain captured content and diff it against a fixture')
    compare_parser.add_argument('fixture', help='Fixture name, relative to the fixture directory')
    compare_parser.add_argument('--rewrite', action='store_true', help='Overwrite the fixture with the captured content')
    compare_parser.add_argument('--no-color', action='store_true', help='Plain diff output')
    compare_parser.set_defaults(func=cmd_compare)

    # prune command
    prune_parser = subparsers.add_parser('prune', help='Evict old segments and remove orphaned files')
    prune_parser.add_argument('--keep', type=int, help='Entries to keep (default: LOGSTOCK_HISTORY_SIZE)')
    prune_parser.add_argument('--min-age', type=float, default=60.0,
                              help='Only remove orphans older than this many seconds (default: 60)')
    prune_parser.set_defaults(func=cmd_prune)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
