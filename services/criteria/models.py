"""Data models for defect criteria procedures, rules and findings."""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

ALL_STRUCTURE_GROUPS = "All Structure Groups"
UNKNOWN_LABEL = "Unknown"

# Library list codes
LIB_PRIORITY = "AMLY_TYP"
LIB_DEFECT_CODE = "AMLY_COD"
LIB_DEFECT_TYPE = "AMLY_FND"
LIB_STRUCTURE_GROUP = "COMPGRP"

# Library combo codes
COMBO_CODE_TYPE = "AMLYCODFND"
COMBO_PRIORITY_COLOR = "ANMLYCLR"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProcedureStatus(str, Enum):
    draft = "draft"
    active = "active"
    archived = "archived"


class ThresholdOperator(str, Enum):
    gt = ">"
    lt = "<"
    ge = ">="
    le = "<="
    eq = "=="
    ne = "!="


class CustomParameterType(str, Enum):
    number = "number"
    text = "text"
    boolean = "boolean"
    date = "date"


class StructureType(str, Enum):
    platform = "platform"
    pipeline = "pipeline"


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


# ── Procedures ──────────────────────────────────────────────────────────────

class Procedure(CamelModel):
    id: str
    procedure_number: str
    procedure_name: str
    version: int = Field(default=1, ge=1)
    status: ProcedureStatus = ProcedureStatus.draft
    effective_date: date
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    revision: int = 1

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}


class ProcedureCreate(CamelModel):
    procedure_number: str
    procedure_name: str
    effective_date: date = Field(default_factory=date.today)
    notes: Optional[str] = None
    created_by: Optional[str] = None
    copy_from_procedure_id: Optional[str] = None

    @field_validator("procedure_number", "procedure_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class ProcedureUpdate(CamelModel):
    procedure_number: Optional[str] = None
    procedure_name: Optional[str] = None
    effective_date: Optional[date] = None
    status: Optional[ProcedureStatus] = None
    notes: Optional[str] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "ignore"}


# ── Custom parameters ───────────────────────────────────────────────────────

class ValidationRules(CamelModel):
    min: Optional[float] = None
    max: Optional[float] = None
    regex: Optional[str] = None
    required: bool = False


class CustomParameterDefinition(CamelModel):
    id: str
    procedure_id: str
    parameter_name: str
    parameter_label: str
    parameter_type: CustomParameterType = CustomParameterType.number
    parameter_unit: Optional[str] = None
    validation_rules: ValidationRules = Field(default_factory=ValidationRules)
    description: str = ""
    is_active: bool = True
    created_at: str = Field(default_factory=now_iso)
    revision: int = 1

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}


class CustomParameterCreate(CamelModel):
    parameter_name: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    parameter_label: str
    parameter_type: CustomParameterType = CustomParameterType.number
    parameter_unit: Optional[str] = None
    validation_rules: ValidationRules = Field(default_factory=ValidationRules)
    description: str = ""
    is_active: bool = True


class CustomParameterUpdate(CamelModel):
    parameter_label: Optional[str] = None
    parameter_unit: Optional[str] = None
    validation_rules: Optional[ValidationRules] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "ignore"}


# ── Rules ───────────────────────────────────────────────────────────────────

class Rule(CamelModel):
    id: str
    procedure_id: str
    structure_group: str
    priority_id: str
    defect_code_id: str
    defect_type_id: str
    jobpack_type: Optional[str] = None
    elevation_min: Optional[float] = None
    elevation_max: Optional[float] = None
    nominal_thickness: Optional[float] = None
    threshold_value: Optional[float] = None
    threshold_text: Optional[str] = None
    threshold_operator: Optional[ThresholdOperator] = None
    custom_parameters: Dict[str, Any] = Field(default_factory=dict)
    auto_flag: bool = False
    alert_message: str
    evaluation_priority: int = 0
    rule_order: int
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    revision: int = 1

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}

    @property
    def has_threshold(self) -> bool:
        return self.threshold_value is not None or self.threshold_text is not None


RULE_EDITABLE_FIELDS = (
    "structure_group",
    "priority_id",
    "defect_code_id",
    "defect_type_id",
    "jobpack_type",
    "elevation_min",
    "elevation_max",
    "nominal_thickness",
    "threshold_value",
    "threshold_text",
    "threshold_operator",
    "custom_parameters",
    "auto_flag",
    "alert_message",
    "evaluation_priority",
)

RULE_MANDATORY_FIELDS = (
    "structure_group",
    "priority_id",
    "defect_code_id",
    "defect_type_id",
    "alert_message",
)


class RuleFields(CamelModel):
    """Caller-supplied rule fields; used for both create and partial update."""

    structure_group: Optional[str] = None
    priority_id: Optional[str] = None
    defect_code_id: Optional[str] = None
    defect_type_id: Optional[str] = None
    jobpack_type: Optional[str] = None
    elevation_min: Optional[float] = None
    elevation_max: Optional[float] = None
    nominal_thickness: Optional[float] = None
    threshold_value: Optional[float] = None
    threshold_text: Optional[str] = None
    threshold_operator: Optional[ThresholdOperator] = None
    custom_parameters: Optional[Dict[str, Any]] = None
    auto_flag: Optional[bool] = None
    alert_message: Optional[str] = None
    evaluation_priority: Optional[int] = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "ignore"}


# ── Findings and results ────────────────────────────────────────────────────

class Finding(CamelModel):
    structure_group: str
    defect_code: str
    defect_type: str
    jobpack_type: Optional[str] = None
    elevation: Optional[float] = None
    # Strict: a boolean value stays a boolean, never 0 or 1.
    value: Optional[Union[StrictBool, StrictInt, StrictFloat, StrictStr]] = None
    custom_parameters: Dict[str, Any] = Field(default_factory=dict)
    inspection_date: Optional[date] = None

    @field_validator("structure_group", "defect_code", "defect_type")
    @classmethod
    def _required_text(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value


class EvaluationResult(CamelModel):
    matched: bool
    procedure_id: str
    rule: Optional[Rule] = None
    auto_flag: bool = False
    alert_message: Optional[str] = None

    @model_validator(mode="after")
    def _consistent(self) -> "EvaluationResult":
        if self.matched and self.rule is None:
            raise ValueError("a matched result needs its rule")
        return self

    @classmethod
    def no_match(cls, procedure_id: str) -> "EvaluationResult":
        return cls(matched=False, procedure_id=procedure_id)

    @classmethod
    def from_rule(cls, rule: Rule) -> "EvaluationResult":
        return cls(
            matched=True,
            procedure_id=rule.procedure_id,
            rule=rule,
            auto_flag=rule.auto_flag,
            alert_message=rule.alert_message,
        )


# ── Defect flags and override audit ─────────────────────────────────────────

class DefectFlag(CamelModel):
    """An inspection defect raised from a matched rule."""

    id: str
    inspection_id: str
    event_id: str
    procedure_id: str
    rule_id: str
    alert_message: Optional[str] = None
    auto_flagged: bool = True
    overridden: bool = False
    override_reason: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    revision: int = 1

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}


class OverrideRequest(CamelModel):
    field_changed: str
    original_value: Any = None
    new_value: Any = None
    reason: str

    @field_validator("field_changed", "reason")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class OverrideAuditEntry(CamelModel):
    id: str
    defect_flag_id: str
    user_id: str
    field_changed: str
    original_value: Optional[str] = None
    new_value: Optional[str] = None
    reason: str
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    override_timestamp: str = Field(default_factory=now_iso)

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}


# ── Library ─────────────────────────────────────────────────────────────────

def is_deleted_marker(value: Any) -> bool:
    """A library row is soft-deleted when its delete marker is set and non-zero."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() not in ("", "0")
    return bool(value)


class LibraryItem(BaseModel):
    id: str
    code: str = ""
    label: str
    active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LibraryItem":
        return cls(
            id=str(row["lib_id"]),
            code=str(row.get("lib_code") or ""),
            label=str(row.get("lib_desc") or ""),
            active=not is_deleted_marker(row.get("lib_delete")),
        )


class ColorCombo(BaseModel):
    code_1: str
    code_2: str
    active: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ColorCombo":
        return cls(
            code_1=str(row["code_1"]),
            code_2=str(row.get("code_2") or ""),
            active=not is_deleted_marker(row.get("lib_delete")),
        )


class RuleLabels(CamelModel):
    rule_id: str
    priority_label: str = UNKNOWN_LABEL
    defect_code_label: str = UNKNOWN_LABEL
    defect_type_label: str = UNKNOWN_LABEL
    priority_color: Optional[Tuple[int, int, int]] = None
    text_color: Optional[str] = None


class StoreSnapshot(BaseModel):
    """Serialized state of a file-backed store."""

    procedures: List[Procedure] = Field(default_factory=list)
    rules: List[Rule] = Field(default_factory=list)
    custom_parameters: List[CustomParameterDefinition] = Field(default_factory=list)
    active_selections: Dict[str, str] = Field(default_factory=dict)
    next_id: int = 1
    rule_order_counters: Dict[str, int] = Field(default_factory=dict)
    flags: List[DefectFlag] = Field(default_factory=list)
    overrides: List[OverrideAuditEntry] = Field(default_factory=list)
