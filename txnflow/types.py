from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from types import MappingProxyType
from typing import Any

# Reserved form-data keys
REBUILD_MARKER = "_triggerRebuild"
RESUMED_MARKER = "isResumedTransaction"
API_ERROR_KEY = "apiError"
API_ERROR_CODE_KEY = "apiErrorCode"
REQUEST_ID_KEY = "requestId"

DEFAULT_ALLOWED_TYPES = ("pdf", "jpg", "jpeg", "png", "doc", "docx", "xls", "xlsx", "txt")


class StepKind(str, Enum):
    PERSON_TYPE = "person_type"
    COMMERCIAL_REGISTRATION = "commercial_registration"
    ENTITY_SELECTION = "entity_selection"
    DOCUMENTS = "documents"
    PAYMENT = "payment"
    REVIEW = "review"
    CUSTOM = "custom"


# ─── Field Model ───

@dataclass
class FieldBase:
    id: str
    label: str = ""
    mandatory: bool = False
    required_when: str | None = None  # expression; mandatory only while it holds
    when: str | None = None  # expression; field shown only while it holds
    rebuild_on_change: bool = False  # structurally significant selector
    clears: list[str] = field(default_factory=list)
    placeholder: str = ""
    verify_endpoint: str | None = None  # fetched on focus lost; {placeholders} from form data

    kind = "field"


@dataclass
class TextField(FieldBase):
    input_type: str = "text"  # text | numeric | decimal | email | phone
    min_length: int | None = None
    max_length: int | None = None

    kind = "text"


@dataclass
class DropDown(FieldBase):
    options: list[str] = field(default_factory=list)
    lookup: str | None = None

    kind = "dropdown"


@dataclass
class CheckBox(FieldBase):
    kind = "checkbox"


@dataclass
class DatePicker(FieldBase):
    allow_past_dates: bool = True
    allow_future_dates: bool = True

    kind = "date"


@dataclass
class FileUpload(FieldBase):
    allowed_types: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TYPES))
    max_size_mb: int = 5

    kind = "file"


@dataclass
class MultiSelect(FieldBase):
    options: list[str] = field(default_factory=list)
    lookup: str | None = None
    max_selection: int | None = None

    kind = "multiselect"


@dataclass
class RadioGroup(FieldBase):
    options: list[str] = field(default_factory=list)

    kind = "radio"


@dataclass
class RecordList(FieldBase):
    """List-of-records input such as owners, engines or sailors."""

    record_fields: list[FieldDefinition] = field(default_factory=list)
    min_records: int = 0

    kind = "records"


@dataclass
class ComputedLineItem(FieldBase):
    line_items: list[tuple[str, float]] = field(default_factory=list)
    total: float | None = None

    kind = "computed"

    def computed_total(self) -> float:
        if self.total is not None:
            return self.total
        return sum(amount for _, amount in self.line_items)


FieldDefinition = (
    TextField | DropDown | CheckBox | DatePicker | FileUpload
    | MultiSelect | RadioGroup | RecordList | ComputedLineItem
)

FIELD_KINDS: dict[str, type] = {
    cls.kind: cls
    for cls in (TextField, DropDown, CheckBox, DatePicker, FileUpload,
                MultiSelect, RadioGroup, RecordList, ComputedLineItem)
}


# ─── Decode contract ───

def _decode_json_list(raw: str) -> list:
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def decode_value(fld: FieldDefinition, raw: str | None) -> Any:
    """Decode a raw form-data string according to the field's kind.

    CheckBox -> bool, DatePicker -> date | None, MultiSelect -> list[str],
    RecordList -> list[dict], ComputedLineItem -> float total, others -> str.
    """
    raw = raw or ""
    match fld:
        case CheckBox():
            return raw == "true"
        case DatePicker():
            try:
                return date.fromisoformat(raw.strip())
            except ValueError:
                return None
        case MultiSelect():
            return [str(v) for v in _decode_json_list(raw)]
        case RecordList():
            return [r for r in _decode_json_list(raw) if isinstance(r, dict)]
        case ComputedLineItem():
            return fld.computed_total()
        case _:
            return raw


def is_blank(fld: FieldDefinition, raw: str | None) -> bool:
    """Whether a raw value counts as "not filled" for a mandatory field."""
    if raw is None or not raw.strip():
        return True
    match fld:
        case CheckBox():
            return raw != "true"
        case MultiSelect() | RecordList():
            return not decode_value(fld, raw)
        case _:
            return False


# ─── Step Model ───

@dataclass
class Route:
    target: str
    condition: str | None = None  # None = always


@dataclass
class CrossFieldRule:
    expression: str
    field_id: str
    message: str


@dataclass
class StepDefinition:
    title: str
    fields: list[FieldDefinition] = field(default_factory=list)
    step_kind: StepKind = StepKind.CUSTOM
    description: str = ""
    required_lookups: list[str] = field(default_factory=list)
    name: str = ""
    routes: list[Route] = field(default_factory=list)
    checks: list[CrossFieldRule] = field(default_factory=list)

    def field_ids(self) -> list[str]:
        return [f.id for f in self.fields]

    def get_field(self, field_id: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None


def find_field(steps: list[StepDefinition], field_id: str) -> FieldDefinition | None:
    for step in steps:
        fld = step.get_field(field_id)
        if fld is not None:
            return fld
    return None


# ─── Transaction Definition IR (parsed from YAML) ───

@dataclass
class LookupSpec:
    key: str
    endpoint: str = ""
    preload: bool = False
    options: list[str] = field(default_factory=list)  # static fallback


@dataclass
class EligibilitySpec:
    endpoint: str
    selection_field: str = "selectedEntity"
    routes: list[Route] = field(default_factory=list)


@dataclass
class StepSpec:
    name: str
    title: str = ""
    kind: StepKind = StepKind.CUSTOM
    description: str = ""
    fields: list[FieldDefinition] = field(default_factory=list)
    lookups: list[str] = field(default_factory=list)
    endpoint: str | None = None
    when: str | None = None
    routes: list[Route] = field(default_factory=list)
    checks: list[CrossFieldRule] = field(default_factory=list)
    eligibility: EligibilitySpec | None = None


@dataclass
class TransactionDefinition:
    name: str
    title: str = ""
    description: str = ""
    lookups: dict[str, LookupSpec] = field(default_factory=dict)
    steps: list[StepSpec] = field(default_factory=list)
    submit_endpoint: str | None = None

    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]


# ─── Strategy results ───

@dataclass(frozen=True)
class NoAction:
    pass


@dataclass(frozen=True)
class UpdateFields:
    updates: dict[str, str]


@dataclass(frozen=True)
class FieldError:
    field_id: str
    message: str


FieldFocusResult = NoAction | UpdateFields | FieldError


@dataclass(frozen=True)
class Advance:
    pass


@dataclass(frozen=True)
class Block:
    reason: str = ""


@dataclass(frozen=True)
class Reroute:
    index: int


StepOutcome = Advance | Block | Reroute


@dataclass(frozen=True)
class SubmitSuccess:
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubmitFailure:
    error: Exception


SubmitOutcome = SubmitSuccess | SubmitFailure


class SubmissionState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    SUCCESS = "success"
    FAILURE = "failure"


# ─── Runtime State ───

@dataclass
class LookupState:
    loading: bool = False
    data: list[str] = field(default_factory=list)
    success: bool = False


@dataclass
class TransactionState:
    transaction_type: str = ""
    steps: list[StepDefinition] = field(default_factory=list)
    current_step: int = 0
    completed_steps: set[int] = field(default_factory=set)
    locked_steps: set[int] = field(default_factory=set)
    form_data: dict[str, str] = field(default_factory=dict)
    field_errors: dict[str, str] = field(default_factory=dict)
    is_resumed_transaction: bool = False
    is_initialized: bool = False
    is_loading: bool = False
    can_proceed_to_next: bool = False
    api_error: str | None = None
    api_error_code: int | None = None
    interrupt: Any = None  # last interrupt surfaced to the user

    def snapshot(self) -> TransactionSnapshot:
        return TransactionSnapshot(
            transaction_type=self.transaction_type,
            steps=tuple(self.steps),
            current_step=self.current_step,
            completed_steps=frozenset(self.completed_steps),
            locked_steps=frozenset(self.locked_steps),
            form_data=MappingProxyType(dict(self.form_data)),
            field_errors=MappingProxyType(dict(self.field_errors)),
            is_resumed_transaction=self.is_resumed_transaction,
            is_initialized=self.is_initialized,
            is_loading=self.is_loading,
            can_proceed_to_next=self.can_proceed_to_next,
            api_error=self.api_error,
            api_error_code=self.api_error_code,
            interrupt=self.interrupt,
        )


@dataclass(frozen=True)
class TransactionSnapshot:
    """Read-only view of TransactionState handed to consumers."""

    transaction_type: str
    steps: tuple[StepDefinition, ...]
    current_step: int
    completed_steps: frozenset[int]
    locked_steps: frozenset[int]
    form_data: MappingProxyType
    field_errors: MappingProxyType
    is_resumed_transaction: bool
    is_initialized: bool
    is_loading: bool
    can_proceed_to_next: bool
    api_error: str | None
    api_error_code: int | None
    interrupt: Any

    @property
    def current(self) -> StepDefinition | None:
        if 0 <= self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None
