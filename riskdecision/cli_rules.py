from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from .config import Settings, get_settings
from .engine.loader import apply_config, load_decision_config
from .rule_engine import DecisionEngine
from .store import AssessmentStore


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Decision rule helper commands")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate a decision configuration file")
    validate.add_argument("--config", type=Path, default=settings.decisions_config_path)
    validate.add_argument("--mode", choices=["warn", "strict"], help="DSL mode; defaults to RISKDECISION_DSL_MODE, then the file's dsl_mode")
    validate.add_argument("--json", action="store_true", help="Emit validation result as JSON")
    validate.add_argument(
        "--treat-warnings-as-errors",
        action="store_true",
        help="Return exit code 2 when warnings are present",
    )

    init = subparsers.add_parser("init", help="Seed the assessment database from a configuration file")
    init.add_argument("--config", type=Path, default=settings.decisions_config_path)
    init.add_argument("--db", type=Path, default=settings.assessment_db_path)

    assign = subparsers.add_parser("assign", help="Auto-assign decisions to undecided packages")
    assign.add_argument("--db", type=Path, default=settings.assessment_db_path)
    assign.add_argument("--package", action="append", dest="packages", help="Limit to a package (repeatable)")
    assign.add_argument("--json", action="store_true", help="Emit results as JSON")

    colors = subparsers.add_parser("colors", help="List decision categories with their colors")
    colors.add_argument("--db", type=Path, default=settings.assessment_db_path)
    return parser


def _configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(level=level, filename=str(settings.log_file))
    else:
        logging.basicConfig(level=level)


def _handle_validate(args: argparse.Namespace, settings: Settings) -> int:
    result = load_decision_config(args.config, override_mode=args.mode or settings.dsl_mode)
    if args.json:
        payload = {
            "status": result.status,
            "mode": result.mode,
            "counts": result.counts,
            "issues": [asdict(issue) for issue in result.issues],
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        counts = result.counts
        print(
            f"status={result.status} mode={result.mode} decisions={counts['decisions']} "
            f"rules={counts['rules']} inert_rules={counts['inert_rules']}"
        )
        for issue in result.issues:
            print(f"{issue.level.upper():7} {issue.code} {issue.where}: {issue.msg}")
            if issue.hint:
                print(f"        hint: {issue.hint}")

    exit_code = 0 if result.status == "ok" else 2
    if exit_code == 0 and args.treat_warnings_as_errors and result.counts.get("warnings", 0) > 0:
        exit_code = 2
    return exit_code


def _handle_init(args: argparse.Namespace, settings: Settings) -> int:
    result = load_decision_config(args.config, override_mode=settings.dsl_mode)
    if result.config is None or result.status != "ok":
        for issue in result.issues:
            print(f"{issue.level.upper():7} {issue.code} {issue.where}: {issue.msg}", file=sys.stderr)
        return 2
    store = AssessmentStore(args.db)
    seeded = apply_config(store, result.config)
    print("seeded" if seeded else "unchanged")
    return 0


def _handle_assign(args: argparse.Namespace, settings: Settings) -> int:
    store = AssessmentStore(args.db)
    engine = DecisionEngine(store, config=settings.engine_config())
    report = engine.assign_all(args.packages)
    if args.json:
        payload = {
            "results": {name: asdict(result) for name, result in report.results.items()},
            "failures": report.failures,
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        for name, result in report.results.items():
            print(f"{name}\t{result.decision or '-'}\t{result.decision_rule or '-'}")
        for name, reason in report.failures.items():
            print(f"{name}\tFAILED\t{reason}")
    return 1 if report.failures else 0


def _handle_colors(args: argparse.Namespace) -> int:
    store = AssessmentStore(args.db)
    registry = DecisionEngine(store).load_categories()
    for category in registry:
        print(
            f"{category.name}\t{category.color}\t{registry.text_color_for(category.name)}"
            f"\t{registry.labels(category.name)['input']}"
        )
    return 0


def main() -> None:
    settings = get_settings()
    parser = _build_parser(settings)
    args = parser.parse_args()
    _configure_logging(settings)
    if args.command == "validate":
        exit_code = _handle_validate(args, settings)
    elif args.command == "init":
        exit_code = _handle_init(args, settings)
    elif args.command == "assign":
        exit_code = _handle_assign(args, settings)
    elif args.command == "colors":
        exit_code = _handle_colors(args)
    else:  # pragma: no cover
        parser.error(f"Unknown command: {args.command}")
        return
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
