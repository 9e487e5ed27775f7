"""Rule repository: ordered rule CRUD scoped to a procedure."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import ConflictError, DependencyError, NotFoundError, ValidationError
from .library import LibraryResolver, LibrarySource
from .models import (
    RULE_EDITABLE_FIELDS,
    RULE_MANDATORY_FIELDS,
    Procedure,
    Rule,
    RuleFields,
)
from .parameters import active_by_name, condition_error
from .store import CriteriaStore, RecordConflict, RecordNotFound, StoreUnavailable

logger = logging.getLogger(__name__)

_PLACEHOLDER_IDS = {"", "undefined", "null", "none"}


@contextmanager
def store_errors() -> Iterator[None]:
    """Translate store failures into the core's error taxonomy."""
    try:
        yield
    except RecordNotFound as exc:
        raise NotFoundError(str(exc)) from exc
    except RecordConflict as exc:
        raise ConflictError(str(exc)) from exc
    except StoreUnavailable as exc:
        raise DependencyError(str(exc)) from exc


def require_id(raw: Any, kind: str) -> str:
    """Normalise an id; client placeholders such as ``"undefined"`` name no record."""
    if raw is None:
        raise ValidationError(f"{kind} id is required")
    if str(raw).strip().lower() in _PLACEHOLDER_IDS:
        raise NotFoundError(f"{kind} {raw!r} not found", {"id": raw})
    return str(raw).strip()


def pydantic_details(exc: PydanticValidationError) -> Dict[str, Any]:
    return {
        "errors": [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
    }


def canonical_order_key(rule: Rule) -> Tuple[int, int, Tuple[int, Union[int, str]]]:
    """Evaluation order: priority descending, then creation order, then id."""
    id_key: Tuple[int, Union[int, str]] = (0, int(rule.id)) if rule.id.isdigit() else (1, rule.id)
    return (-rule.evaluation_priority, rule.rule_order, id_key)


def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
    # Blank optional strings mean "not set".
    for key in ("jobpack_type", "threshold_text"):
        if key in data and isinstance(data[key], str) and not data[key].strip():
            data[key] = None
    if "custom_parameters" in data and data["custom_parameters"] is None:
        data["custom_parameters"] = {}
    return data


class RuleRepository:
    def __init__(self, store: CriteriaStore, library_source: LibrarySource) -> None:
        self._store = store
        self._library_source = library_source

    # ── Reads ───────────────────────────────────────────────────────────

    def _procedure(self, procedure_id: Any) -> Procedure:
        pid = require_id(procedure_id, "procedure")
        with store_errors():
            return self._store.get_procedure(pid)

    def list_rules(self, procedure_id: Any) -> List[Rule]:
        procedure = self._procedure(procedure_id)
        with store_errors():
            rules = self._store.get_rules(procedure.id)
        return sorted(rules, key=canonical_order_key)

    def get_rule(self, rule_id: Any) -> Rule:
        rid = require_id(rule_id, "rule")
        with store_errors():
            return self._store.get_rule(rid)

    # ── Validation ──────────────────────────────────────────────────────

    @staticmethod
    def _parse(fields: Union[RuleFields, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(fields, RuleFields):
            parsed = fields
        else:
            try:
                parsed = RuleFields.model_validate(fields)
            except PydanticValidationError as exc:
                raise ValidationError("invalid rule fields", pydantic_details(exc)) from exc
        return _clean(parsed.model_dump(exclude_unset=True))

    def _validate(self, candidate: Dict[str, Any], procedure_id: str, check_combination: bool) -> None:
        errors: Dict[str, str] = {}

        for name in RULE_MANDATORY_FIELDS:
            value = candidate.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors[name] = "is required"

        if candidate.get("threshold_value") is not None and candidate.get("threshold_text") is not None:
            errors["threshold"] = "threshold_value and threshold_text are mutually exclusive"
        elif (
            candidate.get("threshold_value") is not None or candidate.get("threshold_text") is not None
        ) and candidate.get("threshold_operator") is None:
            errors["threshold_operator"] = "is required when a threshold is set"

        low, high = candidate.get("elevation_min"), candidate.get("elevation_max")
        if low is not None and high is not None and low > high:
            errors["elevation"] = f"elevation_min {low} exceeds elevation_max {high}"

        code, defect_type = candidate.get("defect_code_id"), candidate.get("defect_type_id")
        if check_combination and code and defect_type and "defect_code_id" not in errors:
            allowed = LibraryResolver(self._library_source).defect_type_ids(code)
            if str(defect_type) not in allowed:
                errors["defect_type_id"] = (
                    f"defect type {defect_type} does not belong to defect code {code}"
                )

        conditions = candidate.get("custom_parameters") or {}
        if conditions:
            with store_errors():
                definitions = active_by_name(self._store.get_custom_parameters(procedure_id))
            for name, condition in conditions.items():
                definition = definitions.get(name)
                if definition is None:
                    errors[f"custom_parameters.{name}"] = "is not an active parameter of this procedure"
                    continue
                error = condition_error(definition, condition)
                if error:
                    errors[f"custom_parameters.{name}"] = error

        if errors:
            raise ValidationError("rule validation failed", {"errors": errors})

    # ── Writes ──────────────────────────────────────────────────────────

    def create_rule(self, procedure_id: Any, fields: Union[RuleFields, Dict[str, Any]]) -> Rule:
        procedure = self._procedure(procedure_id)
        data = self._parse(fields)
        candidate: Dict[str, Any] = {
            "auto_flag": False,
            "evaluation_priority": 0,
            "custom_parameters": {},
            **{k: v for k, v in data.items() if v is not None},
        }
        self._validate(candidate, procedure.id, check_combination=True)
        with store_errors():
            rule = self._store.insert_rule({**candidate, "procedure_id": procedure.id})
        logger.info(
            "Created rule %s in procedure %s (priority=%s, order=%s)",
            rule.id, procedure.id, rule.evaluation_priority, rule.rule_order,
        )
        return rule

    def update_rule(
        self,
        rule_id: Any,
        fields: Union[RuleFields, Dict[str, Any]],
        expected_revision: Optional[int] = None,
    ) -> Rule:
        current = self.get_rule(rule_id)
        data = self._parse(fields)
        if not data:
            raise ValidationError("no valid update fields", {"rule_id": current.id})

        # Numeric and text thresholds are mutually exclusive; setting one clears the other.
        new_value, new_text = data.get("threshold_value"), data.get("threshold_text")
        if new_value is not None and new_text is not None:
            raise ValidationError(
                "rule validation failed",
                {"errors": {"threshold": "threshold_value and threshold_text are mutually exclusive"}},
            )
        if new_value is not None:
            data["threshold_text"] = None
        elif new_text is not None:
            data["threshold_value"] = None

        merged = {name: getattr(current, name) for name in RULE_EDITABLE_FIELDS}
        merged.update(data)
        combination_changed = (
            merged["defect_code_id"] != current.defect_code_id
            or merged["defect_type_id"] != current.defect_type_id
        )
        self._validate(merged, current.procedure_id, check_combination=combination_changed)

        with store_errors():
            rule = self._store.patch_rule(current.id, data, expected_revision=expected_revision)
        logger.info("Updated rule %s: %s", rule.id, sorted(data))
        return rule

    def delete_rule(self, rule_id: Any) -> None:
        rid = require_id(rule_id, "rule")
        with store_errors():
            self._store.delete_rule(rid)
        logger.info("Deleted rule %s", rid)

    def copy_rules(self, source_procedure_id: Any, target_procedure_id: Any) -> List[Rule]:
        """Copy every rule of one procedure into another, keeping creation order."""
        source = self._procedure(source_procedure_id)
        target = self._procedure(target_procedure_id)
        with store_errors():
            rules = sorted(self._store.get_rules(source.id), key=lambda r: (r.rule_order, canonical_order_key(r)))
            copied = [
                self._store.insert_rule(
                    {
                        **{name: getattr(rule, name) for name in RULE_EDITABLE_FIELDS},
                        "procedure_id": target.id,
                    }
                )
                for rule in rules
            ]
        logger.info("Copied %d rules from procedure %s to %s", len(copied), source.id, target.id)
        return copied
