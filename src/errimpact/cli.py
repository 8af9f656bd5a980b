"""Command line interface for the error impact analysis."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from .config import VERSION
from .logging_config import setup_logging
from .pipeline import run_analysis
from .utils import PipelineError

DESCRIPTION = """\
Automates the impact analysis of application errors detected in user sessions.

Examples:
  Analyse all errors in all environments and write reports to the current folder:
    errimpact analyse --environments envs.yaml --config config.yaml .

  Analyse all errors in a specific environment and write reports to /tmp/reports:
    errimpact analyse -e envs.yaml -c config.yaml -s dev /tmp/reports
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="errimpact",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=VERSION)
    subcommands = parser.add_subparsers(dest="command", required=True)

    analyse = subcommands.add_parser("analyse", help="Analyses errors in given environments")
    analyse.add_argument("output", nargs="?", type=Path, default=Path("."), help="Output directory for reports")
    analyse.add_argument("-e", "--environments", type=Path, required=True, help="YAML file containing environment details")
    analyse.add_argument("-c", "--config", type=Path, required=True, help="YAML file containing analysis configurations")
    analyse.add_argument("-s", "--specific-environment", default=None, help="Specific environment (from list) to analyse")
    analyse.add_argument("-v", "--verbose", action="store_true", help="Log debug output to the console")
    analyse.add_argument("-d", "--dry-run", action="store_true", help="Validate the files, but don't query anything")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(args.verbose)
    logger.info("Error impact analyser v%s", VERSION)
    try:
        run_analysis(
            environments_file=args.environments,
            config_file=args.config,
            output_dir=args.output,
            specific_environment=args.specific_environment,
            dry_run=args.dry_run,
        )
    except PipelineError as exc:
        logging.getLogger(__name__).error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
