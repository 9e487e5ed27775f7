"""Rule evaluation: first match wins across the canonical rule order."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .matcher import first_mismatch
from .models import EvaluationResult, Finding, Rule, StructureType
from .parameters import finding_parameter_errors
from .procedures import ProcedureLifecycle
from .repository import RuleRepository, pydantic_details, store_errors
from .store import CriteriaStore

logger = logging.getLogger(__name__)

FindingInput = Union[Finding, Dict[str, Any]]


def parse_finding(finding: FindingInput) -> Finding:
    if isinstance(finding, Finding):
        return finding
    try:
        return Finding.model_validate(finding)
    except PydanticValidationError as exc:
        raise ValidationError("invalid finding", pydantic_details(exc)) from exc


def first_match(rules: Sequence[Rule], finding: Finding) -> Optional[Rule]:
    """Walk ``rules`` in the given order and return the first that matches."""
    for rule in rules:
        mismatch = first_mismatch(rule, finding)
        if mismatch is None:
            return rule
        logger.debug("Rule %s skipped: %s", rule.id, mismatch)
    return None


class RuleEvaluator:
    """Stateless evaluator; each call reads one snapshot of the rule list."""

    def __init__(
        self,
        store: CriteriaStore,
        repository: RuleRepository,
        procedures: ProcedureLifecycle,
    ) -> None:
        self._store = store
        self._repository = repository
        self._procedures = procedures

    def _check_parameters(self, procedure_id: str, finding: Finding) -> None:
        with store_errors():
            definitions = self._store.get_custom_parameters(procedure_id)
        errors = finding_parameter_errors(definitions, finding.custom_parameters)
        if errors:
            raise ValidationError("invalid finding custom parameters", {"errors": errors})

    def evaluate(self, procedure_id: Any, finding: FindingInput) -> EvaluationResult:
        parsed = parse_finding(finding)
        rules = self._repository.list_rules(procedure_id)
        return self._evaluate_against(str(procedure_id).strip(), rules, parsed)

    def evaluate_many(self, procedure_id: Any, findings: Iterable[FindingInput]) -> List[EvaluationResult]:
        parsed = [parse_finding(f) for f in findings]
        rules = self._repository.list_rules(procedure_id)
        pid = str(procedure_id).strip()
        return [self._evaluate_against(pid, rules, f) for f in parsed]

    def matching_rules(self, procedure_id: Any, finding: FindingInput) -> List[Rule]:
        """Every rule matching ``finding``, in evaluation order."""
        parsed = parse_finding(finding)
        rules = self._repository.list_rules(procedure_id)
        self._check_parameters(str(procedure_id).strip(), parsed)
        return [rule for rule in rules if first_mismatch(rule, parsed) is None]

    def evaluate_for_context(
        self,
        structure_type: Union[str, StructureType],
        finding: FindingInput,
        inspection_date: Optional[date] = None,
    ) -> EvaluationResult:
        parsed = parse_finding(finding)
        procedure = self._procedures.active_procedure(
            structure_type, inspection_date or parsed.inspection_date
        )
        return self.evaluate(procedure.id, parsed)

    def _evaluate_against(self, procedure_id: str, rules: Sequence[Rule], finding: Finding) -> EvaluationResult:
        self._check_parameters(procedure_id, finding)
        rule = first_match(rules, finding)
        if rule is None:
            logger.info(
                "No criteria matched %s/%s/%s under procedure %s",
                finding.structure_group, finding.defect_code, finding.defect_type, procedure_id,
            )
            return EvaluationResult.no_match(procedure_id)
        logger.info(
            "Rule %s matched under procedure %s (auto_flag=%s)", rule.id, procedure_id, rule.auto_flag
        )
        return EvaluationResult.from_rule(rule)
