from __future__ import annotations

from typing import Any, Dict

import pytest

from services.criteria.library import StaticLibrarySource
from services.criteria.models import ProcedureStatus
from services.criteria.service import CriteriaService, build_service


LIBRARY_ITEMS = {
    "AMLY_TYP": [
        {"lib_id": "P1", "lib_desc": "Immediate", "lib_delete": 0},
        {"lib_id": "P2", "lib_desc": "Major", "lib_delete": None},
        {"lib_id": "P9", "lib_desc": "Retired", "lib_delete": 1},
    ],
    "AMLY_COD": [
        {"lib_id": "CORR", "lib_desc": "Corrosion", "lib_delete": 0},
        {"lib_id": "DENT", "lib_desc": "Mechanical Damage", "lib_delete": 0},
        {"lib_id": "FSPAN", "lib_desc": "Pipeline Free Span", "lib_delete": 0},
        {"lib_id": "OLD", "lib_desc": "Obsolete Code", "lib_delete": "1"},
    ],
    "AMLY_FND": [
        {"lib_id": "PITTING", "lib_desc": "Pitting", "lib_delete": 0},
        {"lib_id": "GENERAL", "lib_desc": "General Wall Loss", "lib_delete": 0},
        {"lib_id": "GOUGE", "lib_desc": "Gouge", "lib_delete": 0},
    ],
    "COMPGRP": [
        {"lib_id": "JACKET", "lib_desc": "Jacket", "lib_delete": 0},
        {"lib_id": "TOPSIDE", "lib_desc": "Topside", "lib_delete": 0},
    ],
}

LIBRARY_COMBOS = {
    "AMLYCODFND": [
        {"code_1": "CORR", "code_2": "PITTING", "lib_delete": 0},
        {"code_1": "CORR", "code_2": "GENERAL", "lib_delete": 0},
        {"code_1": "DENT", "code_2": "GOUGE", "lib_delete": 0},
        {"code_1": "DENT", "code_2": "PITTING", "lib_delete": 1},
    ],
    "ANMLYCLR": [
        {"code_1": "P1", "code_2": "220,20,60", "lib_delete": 0},
        {"code_1": "P2", "code_2": "255,255,0", "lib_delete": 0},
        {"code_1": "P9", "code_2": "128,128,128", "lib_delete": 1},
    ],
}


def rule_fields(**overrides: Any) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "structureGroup": "Jacket",
        "priorityId": "P1",
        "defectCodeId": "CORR",
        "defectTypeId": "PITTING",
        "alertMessage": "Severe pitting",
    }
    fields.update(overrides)
    return fields


def finding(**overrides: Any) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "structureGroup": "Jacket",
        "defectCode": "CORR",
        "defectType": "PITTING",
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def library_source() -> StaticLibrarySource:
    return StaticLibrarySource(items=LIBRARY_ITEMS, combos=LIBRARY_COMBOS)


@pytest.fixture
def service(library_source: StaticLibrarySource) -> CriteriaService:
    return build_service(library_source=library_source)


@pytest.fixture
def procedure(service: CriteriaService):
    created = service.procedures.create_procedure(
        {"procedureNumber": "DC-001", "procedureName": "Jacket criteria", "effectiveDate": "2024-01-01"}
    )
    return service.procedures.update_procedure(created.id, {"status": ProcedureStatus.active})
