"""Entry point for ``python -m timeblocker``.

Provides a CLI that sends one utterance through the scheduling pipeline
and prints the result.  Uses stdlib :mod:`argparse` for argument parsing.

Subcommands:
    parse     -- Extract events from an utterance and report conflicts.
    templates -- List the registered prompt templates.

Exit codes:
    0 -- Success (including zero events), or no command given.
    1 -- An error occurred (config error, model failure, invalid output).
    2 -- Argument parsing error (handled by argparse).
"""

from __future__ import annotations

import argparse
import sys
import uuid

from timeblocker.config import ConfigError, load_settings
from timeblocker.demo_output import print_scheduling_result
from timeblocker.exceptions import ErrorInfo
from timeblocker.extractor import DEFAULT_TEMPLATE
from timeblocker.log import setup_logging
from timeblocker.pipeline import SchedulingRequest
from timeblocker.prompts import get_all_templates
from timeblocker.runtime import Services


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="timeblocker",
        description="Turn natural-language requests into calendar events.",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- "parse" subcommand -------------------------------------------
    parse_parser = subparsers.add_parser(
        "parse",
        help="Extract calendar events from an utterance.",
    )
    parse_parser.add_argument(
        "utterance",
        type=str,
        help='Request text, e.g. "Meeting with Sam tomorrow 2pm for 1 hour".',
    )
    parse_parser.add_argument(
        "--timezone",
        type=str,
        default=None,
        help="IANA timezone (defaults to TIMEZONE from config).",
    )
    parse_parser.add_argument(
        "--template",
        type=str,
        default=DEFAULT_TEMPLATE,
        help=f"Prompt template name (default: {DEFAULT_TEMPLATE}).",
    )
    parse_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Enable debug-level logging.",
    )

    # --- "templates" subcommand ---------------------------------------
    subparsers.add_parser(
        "templates",
        help="List the available prompt templates.",
    )

    return parser


def _handle_parse(args: argparse.Namespace) -> int:
    """Execute the ``parse`` subcommand.

    Returns:
        Exit code: ``0`` on success, ``1`` on error.
    """
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    setup_logging("DEBUG" if args.verbose else settings.log_level)

    services = Services.create(settings)
    request = SchedulingRequest(
        utterance=args.utterance,
        user_id="cli",
        timezone=args.timezone,
        template_name=args.template,
        request_id=f"cli-{uuid.uuid4().hex[:8]}",
    )

    outcome = services.pipeline.run_safe(request)
    if isinstance(outcome, ErrorInfo):
        hint = " (try again)" if outcome.retryable else ""
        field = f" [{outcome.field}]" if outcome.field else ""
        print(f"Error: {outcome.message}{field}{hint}", file=sys.stderr)
        return 1

    print_scheduling_result(outcome)
    return 0


def _handle_templates() -> int:
    for template in get_all_templates():
        print(f"{template.name:<24} {template.description}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the timeblocker CLI.

    Args:
        argv: Command-line arguments.  Defaults to ``sys.argv[1:]``
            when ``None`` (the normal case).

    Returns:
        Exit code: ``0`` on success, ``1`` on error.
    """
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if args.command == "parse":
        return _handle_parse(args)
    if args.command == "templates":
        return _handle_templates()

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
