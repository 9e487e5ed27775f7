"""Tests for rule CRUD and evaluation ordering."""

from __future__ import annotations

import pytest

from conftest import rule_fields

from services.criteria.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from services.criteria.library import StaticLibrarySource
from services.criteria.models import ThresholdOperator
from services.criteria.service import build_service


# ── Create ──────────────────────────────────────────────────────────────────

def test_create_rule_applies_defaults(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields())
    assert rule.procedure_id == procedure.id
    assert rule.auto_flag is False
    assert rule.evaluation_priority == 0
    assert rule.custom_parameters == {}
    assert rule.rule_order == 1
    assert rule.revision == 1


def test_create_rule_accepts_snake_case(service, procedure):
    rule = service.rules.create_rule(
        procedure.id,
        {
            "structure_group": "All Structure Groups",
            "priority_id": "P2",
            "defect_code_id": "DENT",
            "defect_type_id": "GOUGE",
            "alert_message": "Gouge found",
            "auto_flag": True,
        },
    )
    assert rule.auto_flag is True
    assert rule.structure_group == "All Structure Groups"


@pytest.mark.parametrize("missing", ["structureGroup", "priorityId", "defectCodeId", "defectTypeId", "alertMessage"])
def test_mandatory_fields(service, procedure, missing):
    fields = rule_fields()
    del fields[missing]
    with pytest.raises(ValidationError):
        service.rules.create_rule(procedure.id, fields)


def test_blank_mandatory_field_is_rejected(service, procedure):
    with pytest.raises(ValidationError) as excinfo:
        service.rules.create_rule(procedure.id, rule_fields(alertMessage="   "))
    assert "alert_message" in excinfo.value.details["errors"]


def test_defect_type_from_another_code_is_rejected(service, procedure):
    with pytest.raises(ValidationError) as excinfo:
        service.rules.create_rule(procedure.id, rule_fields(defectCodeId="DENT", defectTypeId="PITTING"))
    assert "defect_type_id" in excinfo.value.details["errors"]
    assert service.rules.list_rules(procedure.id) == []


def test_threshold_value_and_text_are_exclusive(service, procedure):
    with pytest.raises(ValidationError):
        service.rules.create_rule(
            procedure.id, rule_fields(thresholdOperator=">", thresholdValue=2.0, thresholdText="deep")
        )


def test_threshold_requires_operator(service, procedure):
    with pytest.raises(ValidationError) as excinfo:
        service.rules.create_rule(procedure.id, rule_fields(thresholdValue=2.0))
    assert "threshold_operator" in excinfo.value.details["errors"]


def test_unknown_operator_is_rejected(service, procedure):
    with pytest.raises(ValidationError):
        service.rules.create_rule(procedure.id, rule_fields(thresholdOperator="=>", thresholdValue=2.0))


def test_inverted_elevation_band_is_rejected(service, procedure):
    with pytest.raises(ValidationError):
        service.rules.create_rule(procedure.id, rule_fields(elevationMin=10, elevationMax=-10))


def test_blank_jobpack_type_means_unset(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields(jobpackType="  "))
    assert rule.jobpack_type is None


def test_create_rule_in_unknown_procedure(service):
    with pytest.raises(NotFoundError):
        service.rules.create_rule("999", rule_fields())


@pytest.mark.parametrize("raw", ["", "  ", "undefined", "null"])
def test_placeholder_procedure_ids_are_not_found(service, raw):
    with pytest.raises(NotFoundError):
        service.rules.list_rules(raw)


def test_missing_procedure_id_is_invalid(service):
    with pytest.raises(ValidationError):
        service.rules.list_rules(None)


def test_custom_parameter_condition_needs_active_definition(service, procedure):
    with pytest.raises(ValidationError):
        service.rules.create_rule(procedure.id, rule_fields(customParameters={"depth_pct": 20}))

    service.procedures.define_custom_parameter(
        procedure.id, {"parameterName": "depth_pct", "parameterLabel": "Depth %", "parameterType": "number"}
    )
    rule = service.rules.create_rule(
        procedure.id, rule_fields(customParameters={"depth_pct": {"operator": ">", "value": 20}})
    )
    assert rule.custom_parameters == {"depth_pct": {"operator": ">", "value": 20}}

    with pytest.raises(ValidationError):
        service.rules.create_rule(procedure.id, rule_fields(customParameters={"depth_pct": "deep"}))


def test_library_outage_is_a_dependency_error():
    class _Offline(StaticLibrarySource):
        def get_color_combo(self, combo_code):
            raise TimeoutError("library timeout")

    svc = build_service(library_source=_Offline())
    created = svc.procedures.create_procedure({"procedureNumber": "DC-9", "procedureName": "x"})
    with pytest.raises(DependencyError):
        svc.rules.create_rule(created.id, rule_fields())
    assert svc.rules.list_rules(created.id) == []


# ── Ordering ────────────────────────────────────────────────────────────────

def test_list_rules_orders_by_priority_then_creation(service, procedure):
    low = service.rules.create_rule(procedure.id, rule_fields(evaluationPriority=1))
    high = service.rules.create_rule(procedure.id, rule_fields(evaluationPriority=10))
    tie = service.rules.create_rule(procedure.id, rule_fields(evaluationPriority=1))
    ids = [r.id for r in service.rules.list_rules(procedure.id)]
    assert ids == [high.id, low.id, tie.id]


def test_rule_order_is_monotonic_after_delete(service, procedure):
    first = service.rules.create_rule(procedure.id, rule_fields())
    second = service.rules.create_rule(procedure.id, rule_fields())
    service.rules.delete_rule(second.id)
    third = service.rules.create_rule(procedure.id, rule_fields())
    assert (first.rule_order, second.rule_order, third.rule_order) == (1, 2, 3)


def test_rule_order_is_per_procedure(service, procedure):
    other = service.procedures.create_procedure({"procedureNumber": "DC-002", "procedureName": "Other"})
    service.rules.create_rule(procedure.id, rule_fields())
    rule = service.rules.create_rule(other.id, rule_fields())
    assert rule.rule_order == 1


def test_list_rules_unknown_procedure(service):
    with pytest.raises(NotFoundError):
        service.rules.list_rules("404")


# ── Update / delete ─────────────────────────────────────────────────────────

def test_update_rule_changes_only_given_fields(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields(evaluationPriority=3))
    updated = service.rules.update_rule(rule.id, {"alertMessage": "Revised", "unknownKey": 1})
    assert updated.alert_message == "Revised"
    assert updated.evaluation_priority == 3
    assert updated.rule_order == rule.rule_order
    assert updated.revision == rule.revision + 1


def test_update_threshold_clears_the_other_kind(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields(thresholdOperator=">", thresholdValue=2.0))
    updated = service.rules.update_rule(rule.id, {"thresholdText": "Severe", "thresholdOperator": "=="})
    assert updated.threshold_value is None
    assert updated.threshold_text == "Severe"
    assert updated.threshold_operator == ThresholdOperator.eq

    again = service.rules.update_rule(rule.id, {"thresholdValue": 4})
    assert again.threshold_text is None
    assert again.threshold_value == 4.0


def test_update_cannot_clear_mandatory_field(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields())
    with pytest.raises(ValidationError):
        service.rules.update_rule(rule.id, {"alertMessage": ""})
    assert service.rules.get_rule(rule.id).alert_message == "Severe pitting"


def test_update_rechecks_code_type_combination(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields())
    with pytest.raises(ValidationError):
        service.rules.update_rule(rule.id, {"defectCodeId": "DENT"})
    updated = service.rules.update_rule(rule.id, {"defectCodeId": "DENT", "defectTypeId": "GOUGE"})
    assert (updated.defect_code_id, updated.defect_type_id) == ("DENT", "GOUGE")


def test_empty_update_is_rejected(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields())
    with pytest.raises(ValidationError):
        service.rules.update_rule(rule.id, {"bogus": True})


def test_stale_revision_is_a_conflict(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields())
    service.rules.update_rule(rule.id, {"alertMessage": "A"}, expected_revision=1)
    with pytest.raises(ConflictError):
        service.rules.update_rule(rule.id, {"alertMessage": "B"}, expected_revision=1)
    assert service.rules.get_rule(rule.id).alert_message == "A"


def test_update_and_delete_unknown_rule(service):
    with pytest.raises(NotFoundError):
        service.rules.update_rule("77", {"alertMessage": "x"})
    with pytest.raises(NotFoundError):
        service.rules.delete_rule("77")


def test_delete_rule(service, procedure):
    rule = service.rules.create_rule(procedure.id, rule_fields())
    service.rules.delete_rule(rule.id)
    assert service.rules.list_rules(procedure.id) == []
    with pytest.raises(NotFoundError):
        service.rules.get_rule(rule.id)
