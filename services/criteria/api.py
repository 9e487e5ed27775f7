"""
FastAPI server for the defect criteria engine.

Provides REST API endpoints for:
  - Procedure versioning, status and active selection
  - Rule CRUD per procedure
  - Evaluating inspection findings against the criteria
  - Defect flags and their override audit trail
  - Library lookups (priorities, defect codes/types, structure groups)

Usage:
  uvicorn services.criteria.api:app --reload --port 8000
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config_loader import Settings, load_settings
from .errors import ConflictError, CriteriaError, DependencyError, NotFoundError, ValidationError
from .models import (
    LIB_PRIORITY,
    LIB_STRUCTURE_GROUP,
    Procedure,
    Rule,
    StructureType,
)
from .service import CriteriaService, service_from_settings

logger = logging.getLogger(__name__)

API_PREFIX = "/api/defect-criteria"

_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    DependencyError: 503,
}


def status_code_for(exc: CriteriaError) -> int:
    for kind, code in _STATUS_CODES.items():
        if isinstance(exc, kind):
            return code
    return 500


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _pop_revision(body: Dict[str, Any]) -> Optional[int]:
    raw = body.pop("expectedRevision", body.pop("expected_revision", None))
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"invalid expectedRevision: {raw!r}") from exc


def create_app(service: Optional[CriteriaService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (Settings() if service is not None else load_settings())
    if service is None:
        service = service_from_settings(settings)

    app = FastAPI(
        title=settings.api.title,
        description="Defect/anomaly criteria rules and finding evaluation",
        version="1.0.0",
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CriteriaError)
    async def criteria_error_handler(request: Request, exc: CriteriaError) -> JSONResponse:
        status = status_code_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"detail": exc.to_dict()})

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "defect-criteria-engine"}

    # ── Procedures ──────────────────────────────────────────────────────

    @app.get(f"{API_PREFIX}/procedures")
    def list_procedures(status: Optional[str] = None):
        return [_dump(p) for p in service.procedures.list_procedures(status)]

    @app.post(f"{API_PREFIX}/procedures", status_code=201)
    def create_procedure(body: Dict[str, Any]):
        return _dump(service.procedures.create_procedure(body))

    @app.get(f"{API_PREFIX}/procedures/{{procedure_id}}")
    def get_procedure(procedure_id: str):
        procedure: Procedure = service.procedures.get_procedure(procedure_id)
        rules = service.rules.list_rules(procedure.id)
        return {**_dump(procedure), "rules": [_dump(r) for r in rules]}

    @app.patch(f"{API_PREFIX}/procedures/{{procedure_id}}")
    def update_procedure(procedure_id: str, body: Dict[str, Any]):
        revision = _pop_revision(body)
        return _dump(service.procedures.update_procedure(procedure_id, body, expected_revision=revision))

    @app.get(f"{API_PREFIX}/procedures/{{procedure_id}}/parameters")
    def list_parameters(procedure_id: str, active_only: bool = False):
        return [_dump(d) for d in service.procedures.list_custom_parameters(procedure_id, active_only)]

    @app.post(f"{API_PREFIX}/procedures/{{procedure_id}}/parameters", status_code=201)
    def define_parameter(procedure_id: str, body: Dict[str, Any]):
        return _dump(service.procedures.define_custom_parameter(procedure_id, body))

    @app.patch(f"{API_PREFIX}/parameters/{{parameter_id}}")
    def update_parameter(parameter_id: str, body: Dict[str, Any]):
        revision = _pop_revision(body)
        return _dump(service.procedures.update_custom_parameter(parameter_id, body, expected_revision=revision))

    # ── Active selection ────────────────────────────────────────────────

    @app.get(f"{API_PREFIX}/active")
    def list_active():
        return service.procedures.active_selections()

    @app.get(f"{API_PREFIX}/active/{{structure_type}}")
    def get_active(structure_type: str):
        return _dump(service.procedures.active_procedure(structure_type))

    @app.put(f"{API_PREFIX}/active/{{structure_type}}")
    def select_active(structure_type: str, body: Dict[str, Any]):
        procedure_id = body.get("procedureId", body.get("procedure_id"))
        return _dump(service.procedures.select_active(structure_type, procedure_id))

    # ── Rules ───────────────────────────────────────────────────────────

    @app.get(f"{API_PREFIX}/rules")
    def list_rules(procedureId: Optional[str] = None, labels: bool = False):
        if not procedureId:
            raise ValidationError("procedureId is required")
        rules = service.rules.list_rules(procedureId)
        if not labels:
            return [_dump(r) for r in rules]
        resolver = service.resolver()
        return [{**_dump(r), **_dump(resolver.rule_labels(r))} for r in rules]

    @app.post(f"{API_PREFIX}/rules", status_code=201)
    def create_rule(body: Dict[str, Any]):
        procedure_id = body.pop("procedureId", body.pop("procedure_id", None))
        rule: Rule = service.rules.create_rule(procedure_id, body)
        return _dump(rule)

    @app.patch(f"{API_PREFIX}/rules/{{rule_id}}")
    def update_rule(rule_id: str, body: Dict[str, Any]):
        revision = _pop_revision(body)
        return _dump(service.rules.update_rule(rule_id, body, expected_revision=revision))

    @app.delete(f"{API_PREFIX}/rules/{{rule_id}}")
    def delete_rule(rule_id: str):
        service.rules.delete_rule(rule_id)
        return {"success": True}

    # ── Evaluation ──────────────────────────────────────────────────────

    @app.post(f"{API_PREFIX}/evaluate")
    def evaluate(body: Dict[str, Any]):
        finding = body.get("finding")
        if not isinstance(finding, dict):
            raise ValidationError("finding object is required")
        procedure_id = body.get("procedureId")
        if procedure_id is not None:
            result = service.evaluator.evaluate(procedure_id, finding)
        else:
            structure_type = body.get("structureType", StructureType.platform.value)
            result = service.evaluator.evaluate_for_context(structure_type, finding)
        return _dump(result)

    # ── Defect flags ────────────────────────────────────────────────────

    @app.post(f"{API_PREFIX}/flags", status_code=201)
    def create_flag(body: Dict[str, Any]):
        inspection_id, event_id = body.get("inspectionId"), body.get("eventId")
        procedure_id = body.get("procedureId")
        finding = body.get("finding")
        if finding is not None:
            if not isinstance(finding, dict):
                raise ValidationError("finding must be an object")
            result = service.evaluator.evaluate(procedure_id, finding)
            flag = service.flags.flag_finding(result, inspection_id, event_id, body.get("autoFlagged"))
        else:
            flag = service.flags.flag_rule(
                inspection_id, event_id, procedure_id, body.get("ruleId"), bool(body.get("autoFlagged", True))
            )
        return _dump(flag)

    @app.get(f"{API_PREFIX}/flags")
    def list_flags(inspectionId: Optional[str] = None):
        return [_dump(f) for f in service.flags.list_flags(inspectionId)]

    @app.get(f"{API_PREFIX}/flags/{{flag_id}}")
    def get_flag(flag_id: str):
        return _dump(service.flags.get_flag(flag_id))

    @app.post(f"{API_PREFIX}/flags/{{flag_id}}/overrides", status_code=201)
    def override_flag(flag_id: str, body: Dict[str, Any], request: Request):
        user_id = body.pop("userId", body.pop("user_id", None))
        entry = service.flags.override_flag(
            flag_id,
            body,
            user_id,
            ip_address=request.client.host if request.client else None,
            session_id=request.headers.get("x-session-id"),
        )
        return _dump(entry)

    @app.get(f"{API_PREFIX}/flags/{{flag_id}}/overrides")
    def flag_audit_trail(flag_id: str):
        return [_dump(e) for e in service.flags.audit_trail(flag_id)]

    # ── Library ─────────────────────────────────────────────────────────

    @app.get(f"{API_PREFIX}/library/priorities")
    def library_priorities():
        resolver = service.resolver()
        out = []
        for item in resolver.options(LIB_PRIORITY):
            color = resolver.resolve_color(item.id)
            out.append({**item.model_dump(), "color": list(color) if color else None})
        return out

    @app.get(f"{API_PREFIX}/library/codes")
    def library_codes(structureType: str = StructureType.platform.value):
        try:
            structure_type = StructureType(structureType)
        except ValueError as exc:
            raise ValidationError(f"unknown structure type {structureType!r}") from exc
        return [item.model_dump() for item in service.resolver().defect_codes(structure_type)]

    @app.get(f"{API_PREFIX}/library/types")
    def library_types(defectCodeId: Optional[str] = None):
        return [item.model_dump() for item in service.resolver().defect_types(defectCodeId)]

    @app.get(f"{API_PREFIX}/library/structure-groups")
    def library_structure_groups():
        return [item.model_dump() for item in service.resolver().options(LIB_STRUCTURE_GROUP)]

    return app


app = create_app()
