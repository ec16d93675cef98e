"""
Command-line interface for the validator.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from hugo_validator import __version__
from hugo_validator.cache import STAGES
from hugo_validator.config import load_config
from hugo_validator.core import (
    CONCURRENT_EXTERNAL_CHECKS,
    ExternalCrawlResult,
    InternalCrawlResult,
    crawl_external_links,
    crawl_internal_links,
    format_broken_links,
)
from hugo_validator.pipeline import run_pipeline


def print_internal_summary(result: InternalCrawlResult) -> None:
    """Print internal crawl summary to stderr."""
    sys.stderr.write(f"Checked {result.visited_count} internal pages\n")
    if result.broken_links:
        sys.stderr.write("Broken internal links:\n")
        sys.stderr.write(format_broken_links(result.broken_links) + "\n")


def print_external_summary(result: ExternalCrawlResult) -> None:
    """Print external crawl summary to stderr."""
    if result.skipped_links:
        sys.stderr.write(f"Skipped {len(result.skipped_links)} external links:\n")
        for skipped in result.skipped_links:
            sys.stderr.write(f"  - {skipped.url} ({skipped.reason})\n")

    sys.stderr.write(
        f"Checked {result.checked_count} external links, {len(result.broken_links)} broken\n"
    )
    if result.broken_links:
        sys.stderr.write("Broken external links:\n")
        sys.stderr.write(format_broken_links(result.broken_links) + "\n")


def cmd_validate(args: argparse.Namespace) -> int:
    """Run the validation pipeline."""
    root = Path(args.root)
    config = load_config(root)

    result = run_pipeline(config, root=root, only=args.only, use_cache=not args.no_cache)

    for stage, stage_result in result.results.items():
        if stage_result.status == "failed" and stage_result.log.strip():
            sys.stderr.write(f"\n--- {stage} ---\n{stage_result.log.rstrip()}\n")

    sys.stderr.write("\n")
    if result.failed:
        sys.stderr.write("❌ Validation failed\n")
    else:
        sys.stderr.write("✅ All validations passed\n")
    return result.exit_code


def cmd_links(args: argparse.Namespace) -> int:
    """Crawl a running site and check its links."""
    config = load_config(Path(args.root))
    base_url = args.base_url or config.test_base_url

    internal = crawl_internal_links(base_url, verbose=args.verbose)
    print_internal_summary(internal)
    exit_code = 0 if internal.passed else 1

    if args.external:
        external = crawl_external_links(
            base_url, config, batch_size=args.batch_size, verbose=args.verbose
        )
        print_external_summary(external)
        if args.strict_external and not external.passed:
            exit_code = 1

    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hugo-validator",
        description="Validate a Hugo site: build, lint, HTML validation and link checks.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--root", default=".", help="Site root directory (default: current directory)")
    parser.add_argument("--verbose", action="store_true", help="Show progress and debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Run the validation pipeline")
    validate.add_argument("--only", choices=STAGES, help="Run a single stage")
    validate.add_argument("--no-cache", action="store_true", help="Run every stage even if unchanged")
    validate.set_defaults(func=cmd_validate)

    links = subparsers.add_parser("links", help="Check links on a running site")
    links.add_argument("base_url", nargs="?", help="Site URL (default: local test server)")
    links.add_argument("--external", action="store_true", help="Also check external links")
    links.add_argument(
        "--strict-external", action="store_true", help="Fail on broken external links"
    )
    links.add_argument(
        "--batch-size",
        type=int,
        default=CONCURRENT_EXTERNAL_CHECKS,
        help=f"Concurrent external checks (default: {CONCURRENT_EXTERNAL_CHECKS})",
    )
    links.set_defaults(func=cmd_links)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the validator CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )

    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
