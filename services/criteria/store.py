"""Storage collaborators for procedures, rules and custom parameter definitions.

The criteria core talks to storage only through the ``CriteriaStore``
protocol. Two implementations are provided:

  - ``InMemoryStore``: process-local, used by tests and the default config
  - ``JsonFileStore``: the same records persisted as one JSON snapshot file

Every call is atomic per record, and ``transaction()`` groups several calls
into one all-or-nothing unit. ``rule_order`` is assigned here, under the
store lock, from a per-procedure counter that never goes backwards.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Protocol, Union

from pydantic import ValidationError as PydanticValidationError

from .models import (
    CustomParameterDefinition,
    DefectFlag,
    OverrideAuditEntry,
    Procedure,
    Rule,
    StoreSnapshot,
    now_iso,
)

logger = logging.getLogger(__name__)


class RecordNotFound(LookupError):
    pass


class RecordConflict(RuntimeError):
    pass


class StoreUnavailable(RuntimeError):
    pass


class CriteriaStore(Protocol):
    def get_procedures(self) -> List[Procedure]: ...

    def get_procedure(self, procedure_id: str) -> Procedure: ...

    def insert_procedure(self, fields: Dict[str, Any]) -> Procedure: ...

    def patch_procedure(
        self, procedure_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> Procedure: ...

    def get_rules(self, procedure_id: str) -> List[Rule]: ...

    def get_rule(self, rule_id: str) -> Rule: ...

    def insert_rule(self, fields: Dict[str, Any]) -> Rule: ...

    def patch_rule(
        self, rule_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> Rule: ...

    def delete_rule(self, rule_id: str) -> None: ...

    def get_custom_parameters(self, procedure_id: str) -> List[CustomParameterDefinition]: ...

    def get_custom_parameter(self, parameter_id: str) -> CustomParameterDefinition: ...

    def insert_custom_parameter(self, fields: Dict[str, Any]) -> CustomParameterDefinition: ...

    def patch_custom_parameter(
        self, parameter_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> CustomParameterDefinition: ...

    def get_active_selection(self, context: str) -> Optional[str]: ...

    def set_active_selection(self, context: str, procedure_id: str) -> None: ...

    def clear_active_selection(self, context: str) -> None: ...

    def get_active_selections(self) -> Dict[str, str]: ...

    def insert_flag(self, fields: Dict[str, Any]) -> DefectFlag: ...

    def get_flag(self, flag_id: str) -> DefectFlag: ...

    def get_flags(self, inspection_id: Optional[str] = None) -> List[DefectFlag]: ...

    def patch_flag(
        self, flag_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> DefectFlag: ...

    def insert_override(self, fields: Dict[str, Any]) -> OverrideAuditEntry: ...

    def get_overrides(self, flag_id: str) -> List[OverrideAuditEntry]: ...

    def transaction(self) -> ContextManager[None]: ...


def _check_revision(kind: str, record_id: str, current: int, expected: Optional[int]) -> None:
    if expected is not None and int(expected) != current:
        raise RecordConflict(
            f"{kind} {record_id} was modified concurrently "
            f"(expected revision {expected}, found {current})"
        )


class InMemoryStore:
    """Thread-safe in-process store."""

    def __init__(self, snapshot: Optional[StoreSnapshot] = None) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._procedures: Dict[str, Procedure] = {}
        self._rules: Dict[str, Rule] = {}
        self._parameters: Dict[str, CustomParameterDefinition] = {}
        self._selections: Dict[str, str] = {}
        self._flags: Dict[str, DefectFlag] = {}
        self._overrides: Dict[str, OverrideAuditEntry] = {}
        self._next_id = 1
        self._rule_order: Dict[str, int] = {}
        if snapshot is not None:
            self._restore(snapshot)

    # ── Snapshot handling ───────────────────────────────────────────────

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                procedures=list(self._procedures.values()),
                rules=list(self._rules.values()),
                custom_parameters=list(self._parameters.values()),
                active_selections=dict(self._selections),
                next_id=self._next_id,
                rule_order_counters=dict(self._rule_order),
                flags=list(self._flags.values()),
                overrides=list(self._overrides.values()),
            )

    def _restore(self, snapshot: StoreSnapshot) -> None:
        self._procedures = {p.id: p for p in snapshot.procedures}
        self._rules = {r.id: r for r in snapshot.rules}
        self._parameters = {p.id: p for p in snapshot.custom_parameters}
        self._selections = dict(snapshot.active_selections)
        self._flags = {f.id: f for f in snapshot.flags}
        self._overrides = {o.id: o for o in snapshot.overrides}
        self._next_id = snapshot.next_id
        self._rule_order = dict(snapshot.rule_order_counters)
        # Counters must never fall behind orders already handed out.
        for rule in self._rules.values():
            if rule.rule_order > self._rule_order.get(rule.procedure_id, 0):
                self._rule_order[rule.procedure_id] = rule.rule_order
        record_ids = [
            *self._procedures, *self._rules, *self._parameters, *self._flags, *self._overrides
        ]
        known_ids = [int(record_id) for record_id in record_ids if record_id.isdigit()]
        if known_ids:
            self._next_id = max(self._next_id, max(known_ids) + 1)

    def _capture(self) -> tuple:
        return (
            dict(self._procedures),
            dict(self._rules),
            dict(self._parameters),
            dict(self._selections),
            dict(self._flags),
            dict(self._overrides),
            self._next_id,
            dict(self._rule_order),
        )

    def _rollback(self, state: tuple) -> None:
        (
            self._procedures,
            self._rules,
            self._parameters,
            self._selections,
            self._flags,
            self._overrides,
            self._next_id,
            self._rule_order,
        ) = state

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        # Nested mutations roll back with their caller and persist once, at the outermost level.
        with self._lock:
            state = self._capture()
            self._depth += 1
            try:
                yield
                if self._depth == 1:
                    self._persist()
            except Exception:
                self._rollback(state)
                raise
            finally:
                self._depth -= 1

    def transaction(self) -> ContextManager[None]:
        """Group several store calls so they all apply, or none do."""
        return self._mutation()

    def _persist(self) -> None:
        """Hook for durable subclasses; the in-memory store keeps nothing else."""

    def _new_id(self) -> str:
        value = self._next_id
        self._next_id += 1
        return str(value)

    # ── Procedures ──────────────────────────────────────────────────────

    def get_procedures(self) -> List[Procedure]:
        with self._lock:
            return list(self._procedures.values())

    def get_procedure(self, procedure_id: str) -> Procedure:
        with self._lock:
            procedure = self._procedures.get(str(procedure_id))
            if procedure is None:
                raise RecordNotFound(f"procedure {procedure_id} not found")
            return procedure

    def insert_procedure(self, fields: Dict[str, Any]) -> Procedure:
        with self._mutation():
            procedure = Procedure.model_validate({**fields, "id": self._new_id()})
            self._procedures[procedure.id] = procedure
            return procedure

    def patch_procedure(
        self, procedure_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> Procedure:
        with self._mutation():
            current = self.get_procedure(procedure_id)
            _check_revision("procedure", current.id, current.revision, expected_revision)
            updated = Procedure.model_validate(
                {
                    **current.model_dump(),
                    **fields,
                    "id": current.id,
                    "revision": current.revision + 1,
                    "updated_at": now_iso(),
                }
            )
            self._procedures[current.id] = updated
            return updated

    # ── Rules ───────────────────────────────────────────────────────────

    def get_rules(self, procedure_id: str) -> List[Rule]:
        with self._lock:
            return [r for r in self._rules.values() if r.procedure_id == str(procedure_id)]

    def get_rule(self, rule_id: str) -> Rule:
        with self._lock:
            rule = self._rules.get(str(rule_id))
            if rule is None:
                raise RecordNotFound(f"rule {rule_id} not found")
            return rule

    def insert_rule(self, fields: Dict[str, Any]) -> Rule:
        with self._mutation():
            procedure_id = str(fields["procedure_id"])
            self.get_procedure(procedure_id)
            order = self._rule_order.get(procedure_id, 0) + 1
            rule = Rule.model_validate(
                {**fields, "id": self._new_id(), "procedure_id": procedure_id, "rule_order": order}
            )
            self._rule_order[procedure_id] = order
            self._rules[rule.id] = rule
            return rule

    def patch_rule(
        self, rule_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> Rule:
        with self._mutation():
            current = self.get_rule(rule_id)
            _check_revision("rule", current.id, current.revision, expected_revision)
            updated = Rule.model_validate(
                {
                    **current.model_dump(),
                    **fields,
                    "id": current.id,
                    "procedure_id": current.procedure_id,
                    "rule_order": current.rule_order,
                    "revision": current.revision + 1,
                    "updated_at": now_iso(),
                }
            )
            self._rules[current.id] = updated
            return updated

    def delete_rule(self, rule_id: str) -> None:
        with self._mutation():
            self.get_rule(rule_id)
            del self._rules[str(rule_id)]

    # ── Custom parameter definitions ────────────────────────────────────

    def get_custom_parameters(self, procedure_id: str) -> List[CustomParameterDefinition]:
        with self._lock:
            return [p for p in self._parameters.values() if p.procedure_id == str(procedure_id)]

    def get_custom_parameter(self, parameter_id: str) -> CustomParameterDefinition:
        with self._lock:
            parameter = self._parameters.get(str(parameter_id))
            if parameter is None:
                raise RecordNotFound(f"custom parameter {parameter_id} not found")
            return parameter

    def insert_custom_parameter(self, fields: Dict[str, Any]) -> CustomParameterDefinition:
        with self._mutation():
            self.get_procedure(str(fields["procedure_id"]))
            parameter = CustomParameterDefinition.model_validate({**fields, "id": self._new_id()})
            self._parameters[parameter.id] = parameter
            return parameter

    def patch_custom_parameter(
        self, parameter_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> CustomParameterDefinition:
        with self._mutation():
            current = self.get_custom_parameter(parameter_id)
            _check_revision("custom parameter", current.id, current.revision, expected_revision)
            updated = CustomParameterDefinition.model_validate(
                {
                    **current.model_dump(),
                    **fields,
                    "id": current.id,
                    "procedure_id": current.procedure_id,
                    "revision": current.revision + 1,
                }
            )
            self._parameters[current.id] = updated
            return updated

    # ── Active procedure selection ──────────────────────────────────────

    def get_active_selection(self, context: str) -> Optional[str]:
        with self._lock:
            return self._selections.get(context)

    def get_active_selections(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._selections)

    def set_active_selection(self, context: str, procedure_id: str) -> None:
        with self._mutation():
            self.get_procedure(procedure_id)
            self._selections[context] = str(procedure_id)

    def clear_active_selection(self, context: str) -> None:
        with self._mutation():
            self._selections.pop(context, None)

    # ── Defect flags and override audit ─────────────────────────────────

    def insert_flag(self, fields: Dict[str, Any]) -> DefectFlag:
        with self._mutation():
            self.get_procedure(str(fields["procedure_id"]))
            flag = DefectFlag.model_validate({**fields, "id": self._new_id()})
            self._flags[flag.id] = flag
            return flag

    def get_flag(self, flag_id: str) -> DefectFlag:
        with self._lock:
            flag = self._flags.get(str(flag_id))
            if flag is None:
                raise RecordNotFound(f"defect flag {flag_id} not found")
            return flag

    def get_flags(self, inspection_id: Optional[str] = None) -> List[DefectFlag]:
        with self._lock:
            return [
                f for f in self._flags.values()
                if inspection_id is None or f.inspection_id == str(inspection_id)
            ]

    def patch_flag(
        self, flag_id: str, fields: Dict[str, Any], expected_revision: Optional[int] = None
    ) -> DefectFlag:
        with self._mutation():
            current = self.get_flag(flag_id)
            _check_revision("defect flag", current.id, current.revision, expected_revision)
            updated = DefectFlag.model_validate(
                {
                    **current.model_dump(),
                    **fields,
                    "id": current.id,
                    "revision": current.revision + 1,
                    "updated_at": now_iso(),
                }
            )
            self._flags[current.id] = updated
            return updated

    def insert_override(self, fields: Dict[str, Any]) -> OverrideAuditEntry:
        with self._mutation():
            self.get_flag(str(fields["defect_flag_id"]))
            entry = OverrideAuditEntry.model_validate({**fields, "id": self._new_id()})
            self._overrides[entry.id] = entry
            return entry

    def get_overrides(self, flag_id: str) -> List[OverrideAuditEntry]:
        with self._lock:
            return [o for o in self._overrides.values() if o.defect_flag_id == str(flag_id)]


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to a JSON snapshot file after every mutation."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        super().__init__(self._load(self.path))
        logger.info("Opened JSON criteria store: %s", self.path)

    @staticmethod
    def _load(path: Path) -> Optional[StoreSnapshot]:
        if not path.exists():
            return None
        try:
            content = path.read_text(encoding="utf-8")
            return StoreSnapshot.model_validate_json(content)
        except (OSError, PydanticValidationError) as exc:
            raise StoreUnavailable(f"cannot read criteria store {path}: {exc}") from exc

    def _persist(self) -> None:
        payload = self.snapshot().model_dump_json(indent=2)
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)
            logger.error("Failed to write criteria store %s: %s", self.path, exc)
            raise StoreUnavailable(f"cannot write criteria store {self.path}: {exc}") from exc
