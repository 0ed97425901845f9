"""impt-test CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

from .config import DEFAULT_CONFIG_NAME, ConfigError, TestConfig
from .output import ConsoleOutput, emit_error, render_summary
from .runner import TestRun, discover_test_files

LOG = logging.getLogger("imptest.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run impUnit tests on Electric Imp devices")
    parser.add_argument(
        "testcase",
        nargs="*",
        help="Test file pattern(s), relative to the current directory (default: 'tests' from config)",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path(DEFAULT_CONFIG_NAME),
        help="Path to the test configuration file (default .imptest)",
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON lines instead of text")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also print unclassified log records")
    parser.add_argument("-d", "--debug", action="store_true", help="Shorthand for --log-level DEBUG")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("IMPT_LOG", "WARNING"),
        help="Logging level (default WARNING)",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging("DEBUG" if args.debug else args.log_level)
    try:
        config = TestConfig.from_file(args.config)
    except ConfigError as exc:
        emit_error(message=str(exc), json_output=args.json)
        return 1

    if args.testcase:
        files = discover_test_files(args.testcase, Path.cwd())
    else:
        files = discover_test_files(config.tests, config.directory)
    if not files:
        emit_error(message="No test files found", json_output=args.json)
        return 1
    LOG.info("found %d test file(s): %s", len(files), ", ".join(f.name for f in files))

    run = TestRun(config, listeners=[ConsoleOutput(json_output=args.json, verbose=args.verbose)])
    try:
        result = run.run(files)
    except KeyboardInterrupt:
        print()
        return 1
    except OSError as exc:
        LOG.debug("test run failed", exc_info=True)
        emit_error(message=str(exc), json_output=args.json)
        return 1

    if not args.json:
        print()
        print(render_summary(result))
        if result.abort_reason:
            print(f"Testing Aborted: {result.abort_reason}")
        print("Testing succeeded" if result.success else "Testing failed")
    return 0 if result.success else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
