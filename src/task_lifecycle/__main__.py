"""Entry point for `python -m task_lifecycle` and the `task-lifecycle` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from task_lifecycle.models import ContractViolation
from task_lifecycle.scenario import run_scenario_file


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a scripted task lifecycle scenario")
    parser.add_argument("--scenario", type=Path, required=True, help="Path to a JSON scenario file")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.scenario.is_file():
        logging.error("Scenario file does not exist: %s", args.scenario)
        return 1

    try:
        outcome = run_scenario_file(args.scenario)
    except (ValueError, ContractViolation) as exc:
        logging.error("Scenario rejected: %s", exc)
        return 1

    if outcome is None:
        return 2

    print(outcome.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
