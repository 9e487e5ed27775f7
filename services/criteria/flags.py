"""Defect flags raised from matched rules, and the audit trail of their overrides."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import DefectFlag, EvaluationResult, OverrideAuditEntry, OverrideRequest
from .repository import RuleRepository, pydantic_details, require_id, store_errors
from .store import CriteriaStore

logger = logging.getLogger(__name__)


def _required_text(value: Any, name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required", {"field": name})
    return str(value).strip()


def _audit_text(value: Any) -> Optional[str]:
    # Audit rows keep old and new values as text whatever their original kind.
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _audit_key(entry: OverrideAuditEntry):
    return (entry.override_timestamp, int(entry.id) if entry.id.isdigit() else -1)


class FlagRegistry:
    """Records defect flags against inspections and audits every override."""

    def __init__(self, store: CriteriaStore, rules: RuleRepository) -> None:
        self._store = store
        self._rules = rules

    def flag_rule(
        self,
        inspection_id: Any,
        event_id: Any,
        procedure_id: Any,
        rule_id: Any,
        auto_flagged: bool = True,
    ) -> DefectFlag:
        inspection = _required_text(inspection_id, "inspection_id")
        event = _required_text(event_id, "event_id")
        rule = self._rules.get_rule(rule_id)
        pid = require_id(procedure_id, "procedure")
        if rule.procedure_id != pid:
            raise ValidationError(
                f"rule {rule.id} does not belong to procedure {pid}",
                {"rule_id": rule.id, "procedure_id": pid},
            )
        with store_errors():
            flag = self._store.insert_flag(
                {
                    "inspection_id": inspection,
                    "event_id": event,
                    "procedure_id": pid,
                    "rule_id": rule.id,
                    "alert_message": rule.alert_message,
                    "auto_flagged": bool(auto_flagged),
                }
            )
        logger.info(
            "Flagged event %s of inspection %s with rule %s (auto=%s)",
            event, inspection, rule.id, flag.auto_flagged,
        )
        return flag

    def flag_finding(
        self,
        result: EvaluationResult,
        inspection_id: Any,
        event_id: Any,
        auto_flagged: Optional[bool] = None,
    ) -> DefectFlag:
        """Flag the rule behind a matched evaluation; the rule's ``auto_flag`` is the default."""
        if not result.matched or result.rule is None:
            raise ValidationError("only a matched evaluation can be flagged", {"procedure_id": result.procedure_id})
        return self.flag_rule(
            inspection_id,
            event_id,
            result.procedure_id,
            result.rule.id,
            result.auto_flag if auto_flagged is None else auto_flagged,
        )

    def get_flag(self, flag_id: Any) -> DefectFlag:
        fid = require_id(flag_id, "defect flag")
        with store_errors():
            return self._store.get_flag(fid)

    def list_flags(self, inspection_id: Optional[str] = None) -> List[DefectFlag]:
        with store_errors():
            flags = self._store.get_flags(inspection_id)
        return sorted(flags, key=lambda f: int(f.id) if f.id.isdigit() else -1)

    def override_flag(
        self,
        flag_id: Any,
        request: Union[OverrideRequest, Dict[str, Any]],
        user_id: Any,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> OverrideAuditEntry:
        """Mark a flag overridden and append the change to its audit trail."""
        if isinstance(request, OverrideRequest):
            parsed = request
        else:
            try:
                parsed = OverrideRequest.model_validate(request)
            except PydanticValidationError as exc:
                raise ValidationError("invalid override", pydantic_details(exc)) from exc
        user = _required_text(user_id, "user_id")
        flag = self.get_flag(flag_id)

        with store_errors(), self._store.transaction():
            entry = self._store.insert_override(
                {
                    "defect_flag_id": flag.id,
                    "user_id": user,
                    "field_changed": parsed.field_changed,
                    "original_value": _audit_text(parsed.original_value),
                    "new_value": _audit_text(parsed.new_value),
                    "reason": parsed.reason,
                    "ip_address": ip_address,
                    "session_id": session_id,
                }
            )
            self._store.patch_flag(flag.id, {"overridden": True, "override_reason": parsed.reason})
        logger.info(
            "User %s overrode %s on flag %s: %r -> %r",
            user, parsed.field_changed, flag.id, entry.original_value, entry.new_value,
        )
        return entry

    def audit_trail(self, flag_id: Any) -> List[OverrideAuditEntry]:
        """Overrides of one flag, newest first."""
        flag = self.get_flag(flag_id)
        with store_errors():
            entries = self._store.get_overrides(flag.id)
        return sorted(entries, key=_audit_key, reverse=True)
