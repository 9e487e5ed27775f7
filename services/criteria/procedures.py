"""Procedure lifecycle: versioning, status, active selection, custom parameters."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import NotFoundError, ValidationError
from .models import (
    CustomParameterCreate,
    CustomParameterDefinition,
    CustomParameterUpdate,
    Procedure,
    ProcedureCreate,
    ProcedureStatus,
    ProcedureUpdate,
    StructureType,
)
from .parameters import definition_errors
from .repository import RuleRepository, pydantic_details, require_id, store_errors
from .store import CriteriaStore, RecordNotFound

logger = logging.getLogger(__name__)


def _structure_type(raw: Union[str, StructureType]) -> StructureType:
    try:
        return StructureType(raw)
    except ValueError as exc:
        raise ValidationError(
            f"unknown structure type {raw!r}", {"allowed": [s.value for s in StructureType]}
        ) from exc


class ProcedureLifecycle:
    def __init__(self, store: CriteriaStore, rules: RuleRepository) -> None:
        self._store = store
        self._rules = rules

    # ── Procedures ──────────────────────────────────────────────────────

    def get_procedure(self, procedure_id: Any) -> Procedure:
        pid = require_id(procedure_id, "procedure")
        with store_errors():
            return self._store.get_procedure(pid)

    def list_procedures(self, status: Optional[Union[str, ProcedureStatus]] = None) -> List[Procedure]:
        if status is not None:
            try:
                status = ProcedureStatus(status)
            except ValueError as exc:
                raise ValidationError(f"unknown procedure status {status!r}") from exc
        with store_errors():
            procedures = self._store.get_procedures()
        if status is not None:
            procedures = [p for p in procedures if p.status == status]
        return sorted(procedures, key=lambda p: (p.effective_date, p.version), reverse=True)

    def create_procedure(self, fields: Union[ProcedureCreate, Dict[str, Any]]) -> Procedure:
        if isinstance(fields, ProcedureCreate):
            data = fields
        else:
            try:
                data = ProcedureCreate.model_validate(fields)
            except PydanticValidationError as exc:
                raise ValidationError("invalid procedure fields", pydantic_details(exc)) from exc

        source: Optional[Procedure] = None
        if data.copy_from_procedure_id is not None:
            source = self.get_procedure(data.copy_from_procedure_id)

        # The new version and its copied records commit as one unit.
        with store_errors(), self._store.transaction():
            versions = [
                p.version for p in self._store.get_procedures() if p.procedure_number == data.procedure_number
            ]
            procedure = self._store.insert_procedure(
                {
                    **data.model_dump(exclude={"copy_from_procedure_id"}),
                    "version": max(versions) + 1 if versions else 1,
                    "status": ProcedureStatus.draft,
                }
            )
            if source is not None:
                self._copy_parameters(source.id, procedure.id)
                self._rules.copy_rules(source.id, procedure.id)
        logger.info(
            "Created procedure %s (%s v%d)", procedure.id, procedure.procedure_number, procedure.version
        )
        return procedure

    def update_procedure(
        self,
        procedure_id: Any,
        fields: Union[ProcedureUpdate, Dict[str, Any]],
        expected_revision: Optional[int] = None,
    ) -> Procedure:
        try:
            pid = require_id(procedure_id, "procedure")
            with store_errors():
                current = self._store.get_procedure(pid)
        except NotFoundError as exc:
            raise ValidationError(f"invalid procedure id: {procedure_id!r}", {"id": procedure_id}) from exc

        if isinstance(fields, ProcedureUpdate):
            parsed = fields
        else:
            try:
                parsed = ProcedureUpdate.model_validate(fields)
            except PydanticValidationError as exc:
                raise ValidationError("invalid procedure fields", pydantic_details(exc)) from exc
        updates = parsed.model_dump(exclude_unset=True)
        if not updates:
            raise ValidationError("no valid update fields", {"id": pid})
        for name in ("procedure_number", "procedure_name", "effective_date", "status"):
            if name in updates and updates[name] is None:
                raise ValidationError(f"{name} cannot be cleared", {"field": name})

        with store_errors():
            procedure = self._store.patch_procedure(pid, updates, expected_revision=expected_revision)
        logger.info("Updated procedure %s: %s", pid, sorted(updates))

        if current.status == ProcedureStatus.active and procedure.status != ProcedureStatus.active:
            self._release_selections(procedure.id)
        return procedure

    def applicable_procedure(self, inspection_date: date) -> Optional[Procedure]:
        """Most recent active procedure in effect on ``inspection_date``."""
        candidates = [
            p
            for p in self.list_procedures(ProcedureStatus.active)
            if p.effective_date <= inspection_date
        ]
        return candidates[0] if candidates else None

    # ── Active selection ────────────────────────────────────────────────

    def select_active(self, structure_type: Union[str, StructureType], procedure_id: Any) -> Procedure:
        context = _structure_type(structure_type)
        procedure = self.get_procedure(procedure_id)
        if procedure.status != ProcedureStatus.active:
            raise ValidationError(
                f"procedure {procedure.id} is {procedure.status.value}; only active procedures can be selected",
                {"status": procedure.status.value},
            )
        with store_errors():
            self._store.set_active_selection(context.value, procedure.id)
        logger.info("Selected procedure %s for %s evaluations", procedure.id, context.value)
        return procedure

    def active_procedure(
        self,
        structure_type: Union[str, StructureType],
        inspection_date: Optional[date] = None,
    ) -> Procedure:
        context = _structure_type(structure_type)
        with store_errors():
            selected_id = self._store.get_active_selection(context.value)
        if selected_id is not None:
            try:
                procedure = self._store.get_procedure(selected_id)
            except RecordNotFound:
                logger.warning("Selected procedure %s for %s no longer exists", selected_id, context.value)
            else:
                if procedure.status == ProcedureStatus.active:
                    return procedure
                logger.warning(
                    "Selected procedure %s for %s is %s; falling back to effective date",
                    selected_id, context.value, procedure.status.value,
                )

        fallback = self.applicable_procedure(inspection_date or date.today())
        if fallback is None:
            raise NotFoundError(
                f"no active procedure applies to {context.value} evaluations",
                {"structure_type": context.value},
            )
        return fallback

    def active_selections(self) -> Dict[str, str]:
        with store_errors():
            return self._store.get_active_selections()

    def _release_selections(self, procedure_id: str) -> None:
        for context, selected in self.active_selections().items():
            if selected == procedure_id:
                with store_errors():
                    self._store.clear_active_selection(context)
                logger.warning("Procedure %s left active status; cleared %s selection", procedure_id, context)

    # ── Custom parameter definitions ────────────────────────────────────

    def list_custom_parameters(self, procedure_id: Any, active_only: bool = False) -> List[CustomParameterDefinition]:
        procedure = self.get_procedure(procedure_id)
        with store_errors():
            definitions = self._store.get_custom_parameters(procedure.id)
        if active_only:
            definitions = [d for d in definitions if d.is_active]
        return sorted(definitions, key=lambda d: d.parameter_name)

    def define_custom_parameter(
        self, procedure_id: Any, fields: Union[CustomParameterCreate, Dict[str, Any]]
    ) -> CustomParameterDefinition:
        procedure = self.get_procedure(procedure_id)
        if isinstance(fields, CustomParameterCreate):
            parsed = fields
        else:
            try:
                parsed = CustomParameterCreate.model_validate(fields)
            except PydanticValidationError as exc:
                raise ValidationError("invalid custom parameter", pydantic_details(exc)) from exc
        data = parsed.model_dump()
        with store_errors():
            existing = self._store.get_custom_parameters(procedure.id)
        errors = definition_errors(data, existing)
        if errors:
            raise ValidationError("custom parameter validation failed", {"errors": errors})
        with store_errors():
            definition = self._store.insert_custom_parameter({**data, "procedure_id": procedure.id})
        logger.info("Defined custom parameter %s on procedure %s", definition.parameter_name, procedure.id)
        return definition

    def update_custom_parameter(
        self,
        parameter_id: Any,
        fields: Union[CustomParameterUpdate, Dict[str, Any]],
        expected_revision: Optional[int] = None,
    ) -> CustomParameterDefinition:
        pid = require_id(parameter_id, "custom parameter")
        if isinstance(fields, CustomParameterUpdate):
            parsed = fields
        else:
            try:
                parsed = CustomParameterUpdate.model_validate(fields)
            except PydanticValidationError as exc:
                raise ValidationError("invalid custom parameter", pydantic_details(exc)) from exc
        updates = parsed.model_dump(exclude_unset=True)
        if not updates:
            raise ValidationError("no valid update fields", {"id": pid})
        for name in ("parameter_label", "validation_rules", "description", "is_active"):
            if name in updates and updates[name] is None:
                raise ValidationError(f"{name} cannot be cleared", {"field": name})
        if "validation_rules" in updates:
            errors = definition_errors({"validation_rules": updates["validation_rules"]}, [])
            if errors:
                raise ValidationError("custom parameter validation failed", {"errors": errors})
        with store_errors():
            definition = self._store.patch_custom_parameter(pid, updates, expected_revision=expected_revision)
        logger.info("Updated custom parameter %s: %s", pid, sorted(updates))
        return definition

    def _copy_parameters(self, source_id: str, target_id: str) -> None:
        with store_errors():
            for definition in self._store.get_custom_parameters(source_id):
                self._store.insert_custom_parameter(
                    {
                        **definition.model_dump(exclude={"id", "procedure_id", "created_at", "revision"}),
                        "procedure_id": target_id,
                    }
                )
