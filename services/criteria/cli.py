"""
cli.py – Command line access to the defect criteria engine.

Usage:
    python -m services.criteria.cli procedures [--status active]
    python -m services.criteria.cli rules --procedure 3
    python -m services.criteria.cli evaluate --finding inputs/finding.json [--procedure 3 | --structure-type pipeline]
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional, Sequence

from services.criteria.config_loader import load_config, load_settings
from services.criteria.errors import CriteriaError
from services.criteria.logger_setup import setup_logging
from services.criteria.models import EvaluationResult, LIB_PRIORITY
from services.criteria.service import CriteriaService, service_from_settings

logger = logging.getLogger(__name__)


RULE_WIDTH = 72


def _section(title: Optional[str] = None) -> None:
    """Print a full-width rule, with ``title`` centred in it when given."""
    if title is None:
        print("=" * RULE_WIDTH)
        return
    print()
    print(f" {title} ".center(RULE_WIDTH, "="))


def _cmd_procedures(service: CriteriaService, args: argparse.Namespace) -> int:
    procedures = service.procedures.list_procedures(args.status)
    selections = service.procedures.active_selections()
    _section("PROCEDURES")
    if not procedures:
        print("  None.")
    for p in procedures:
        contexts = [ctx for ctx, pid in selections.items() if pid == p.id]
        selected = f"  <- {', '.join(contexts)}" if contexts else ""
        print(f"  [{p.id}] {p.procedure_number} v{p.version} ({p.status.value}) "
              f"effective {p.effective_date}: {p.procedure_name}{selected}")
    _section()
    return 0


def _cmd_rules(service: CriteriaService, args: argparse.Namespace) -> int:
    rules = service.rules.list_rules(args.procedure)
    resolver = service.resolver()
    _section(f"RULES (procedure {args.procedure})")
    if not rules:
        print("  None.")
    for rule in rules:
        labels = resolver.rule_labels(rule)
        threshold = ""
        if rule.has_threshold:
            bound = rule.threshold_value if rule.threshold_value is not None else repr(rule.threshold_text)
            threshold = f" value {rule.threshold_operator.value if rule.threshold_operator else '?'} {bound}"
        print(f"  #{rule.rule_order} [{rule.id}] prio={rule.evaluation_priority} "
              f"{rule.structure_group} / {labels.defect_code_label} / {labels.defect_type_label}{threshold}")
        print(f"      → {labels.priority_label}{' (auto-flag)' if rule.auto_flag else ''}: {rule.alert_message}")
    _section()
    return 0


def _load_findings(path: Path) -> List[Any]:
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    return payload if isinstance(payload, list) else [payload]


def _print_results(results: Sequence[EvaluationResult], service: CriteriaService) -> None:
    resolver = service.resolver()
    _section("EVALUATION RESULTS")
    for i, result in enumerate(results, 1):
        if not result.matched:
            print(f"  {i}. no criteria matched (procedure {result.procedure_id})")
            continue
        rule = result.rule
        priority = resolver.resolve_label(LIB_PRIORITY, rule.priority_id)
        flag = "⚠ AUTO-FLAG" if result.auto_flag else "review"
        print(f"  {i}. rule {rule.id} [{priority}] {flag}: {result.alert_message}")
    _section()


def _cmd_evaluate(service: CriteriaService, args: argparse.Namespace) -> int:
    path = Path(args.finding)
    if not path.exists():
        logger.error(f"Finding file not found: {path}")
        return 1
    findings = _load_findings(path)
    if args.procedure:
        results = service.evaluator.evaluate_many(args.procedure, findings)
    else:
        results = [service.evaluator.evaluate_for_context(args.structure_type, f) for f in findings]

    if args.out:
        out_path = Path(args.out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, "w", encoding="utf-8") as f:
            json.dump([r.model_dump(mode="json", by_alias=True) for r in results], f,
                      ensure_ascii=False, indent=2)
        logger.info(f"Saved evaluation results: {out_path}")

    _print_results(results, service)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Defect/Anomaly Criteria Rule Engine")
    parser.add_argument(
        "--config", "-c", default=None,
        help="Path to criteria.yaml (default: $CRITERIA_CONFIG or configs/criteria.yaml)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("procedures", help="List procedures")
    p_list.add_argument("--status", choices=["draft", "active", "archived"], default=None)

    p_rules = sub.add_parser("rules", help="List a procedure's rules in evaluation order")
    p_rules.add_argument("--procedure", "-p", required=True, help="Procedure id")

    p_eval = sub.add_parser("evaluate", help="Evaluate findings from a JSON file")
    p_eval.add_argument("--finding", "-f", required=True, help="Finding JSON (object or list)")
    p_eval.add_argument("--procedure", "-p", default=None, help="Evaluate against this procedure id")
    p_eval.add_argument(
        "--structure-type", default="platform", choices=["platform", "pipeline"],
        help="Context whose active procedure is used when --procedure is omitted"
    )
    p_eval.add_argument("--out", "-o", default=None, help="Write results JSON here")
    return parser


_COMMANDS = {
    "procedures": _cmd_procedures,
    "rules": _cmd_rules,
    "evaluate": _cmd_evaluate,
}


def main(argv: Optional[Sequence[str]] = None, service: Optional[CriteriaService] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(load_config(args.config))
    if service is None:
        service = service_from_settings(load_settings(args.config))

    try:
        return _COMMANDS[args.command](service, args)
    except CriteriaError as exc:
        logger.error(f"{type(exc).__name__}: {exc.message}")
        if exc.details:
            logger.error(json.dumps(exc.details, ensure_ascii=False, default=str))
        return 2


if __name__ == "__main__":
    sys.exit(main())
