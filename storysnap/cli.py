from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

import requests

from .config import Settings, load_settings
from .errors import SnapshotError
from .models import PruningMode, SnapshotDescriptor
from .pipeline import ApplyPipeline, Session
from .providers import default_providers
from .resolver import choose, require_candidates, resolve_for_mode, resolve_for_modes
from .services import SystemdServiceManager

logger = logging.getLogger(__name__)


def _prompt_choice(label: str, options: List[str]) -> int:
    print(label)
    for index, option in enumerate(options, start=1):
        print(f"  {index}) {option}")
    while True:
        raw = input("> ").strip()
        if raw.isdigit() and 1 <= int(raw) <= len(options):
            return int(raw) - 1
        print(f"Enter a number between 1 and {len(options)}.")


def _prompt_mode() -> PruningMode:
    print("Pruning Mode Information:")
    print(" - Pruned Mode: Stores only recent blocks, reducing disk usage.")
    print(" - Archive Mode: Stores the entire chain history, requiring more disk space.")
    modes = list(PruningMode)
    return modes[_prompt_choice("Select the pruning mode", [m.value for m in modes])]


def _prompt_provider(results: List[SnapshotDescriptor]) -> SnapshotDescriptor:
    options = [f"{d.provider} {d.summary()}" for d in results]
    return results[_prompt_choice("Select the snapshot provider", options)]


def _by_name(name: str):
    def _pick(results: List[SnapshotDescriptor]) -> SnapshotDescriptor:
        for descriptor in results:
            if descriptor.provider.lower() == name.lower():
                return descriptor
        raise SnapshotError(f"Unsupported provider: {name}")

    return _pick


def _print_table(title: str, rows: List[SnapshotDescriptor]) -> None:
    print(f"\n{title}")
    print(f"{'Provider':<12} {'Total Size':<12} {'Block Height':<14} {'Time Ago':<16}")
    print("-" * 56)
    for d in rows:
        print(f"{d.provider:<12} {d.total_size:<12} {d.block_height:<14} {d.age:<16}")


def cmd_providers(args, settings: Settings, http: requests.Session) -> int:
    providers = default_providers(settings, http)
    results = resolve_for_modes(providers, list(PruningMode))
    if not results:
        print("Error: no providers data available")
        return 1
    for mode in PruningMode:
        rows = [d for d in results if d.mode is mode]
        if rows:
            _print_table(f"{mode.value.capitalize()} Snapshots", rows)
    return 0


def cmd_download(args, settings: Settings, http: requests.Session) -> int:
    providers = default_providers(settings, http)
    session = Session(
        layout=settings.layout(args.home),
        services=settings.services,
        output_path=args.output_path,
    )
    pipeline = ApplyPipeline(providers, SystemdServiceManager())

    mode = pipeline.select_mode(session, args.mode or _prompt_mode())
    logger.info("Fetching snapshot data for providers (mode=%s)...", mode)
    results = resolve_for_mode(providers, mode)
    require_candidates(results, mode)

    chooser = _by_name(args.provider) if args.provider else _prompt_provider
    descriptor = choose(results, chooser)
    pipeline.select_provider(session, descriptor)
    pipeline.run(session)
    print(f"Snapshot from {descriptor.provider} ({mode}) completed.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storysnap", description="Story node snapshot tool")
    parser.add_argument("--config", help="Path to storysnap.properties")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    snapshot = sub.add_parser("snapshot", help="Manage snapshots for the Story node")
    snapshot_sub = snapshot.add_subparsers(dest="snapshot_command", required=True)

    download = snapshot_sub.add_parser("download", help="Download and apply snapshots")
    download.add_argument("--home", help="Home directory of the Story node")
    download.add_argument(
        "--output-path",
        help="Download snapshot directly to the specified path without setup",
    )
    download.add_argument("--mode", choices=[m.value for m in PruningMode])
    download.add_argument("--provider", help="Provider name; prompts when omitted")
    download.set_defaults(func=cmd_download)

    providers = snapshot_sub.add_parser(
        "providers", help="List available snapshot providers and their data"
    )
    providers.set_defaults(func=cmd_providers)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    with requests.Session() as http:
        try:
            return args.func(args, settings, http)
        except SnapshotError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            if isinstance(exc.__cause__, KeyboardInterrupt):
                return 130
            return 1
        except (KeyboardInterrupt, EOFError):
            print("Aborted.", file=sys.stderr)
            return 130


if __name__ == "__main__":
    sys.exit(main())
