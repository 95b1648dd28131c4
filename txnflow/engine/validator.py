"""Local, synchronous step validation."""
from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import date
from typing import TYPE_CHECKING

from txnflow.engine.expression import evaluate_condition
from txnflow.types import (
    CheckBox,
    DatePicker,
    FileUpload,
    MultiSelect,
    RecordList,
    TextField,
    decode_value,
    is_blank,
)

if TYPE_CHECKING:
    from txnflow.types import FieldDefinition, StepDefinition

REQUIRED_MESSAGE = "This field is required"

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_DECIMAL_RE = re.compile(r"^\d+(\.\d+)?$")


def is_required(fld: FieldDefinition, form_data: Mapping[str, str]) -> bool:
    """A field is required when mandatory, or when its `required_when` holds."""
    if fld.required_when:
        return evaluate_condition(fld.required_when, form_data)
    return fld.mandatory


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value.strip()))


def is_valid_phone(value: str) -> bool:
    digits = value.strip().removeprefix("+")
    return len(digits) >= 8 and digits.isdigit()


def validate_field(
    fld: FieldDefinition,
    raw: str | None,
    form_data: Mapping[str, str],
    today: date | None = None,
) -> str | None:
    """Return the error message for one field, or None when it passes."""
    required = is_required(fld, form_data)
    if is_blank(fld, raw):
        if required:
            return REQUIRED_MESSAGE
        # Empty optional fields skip format checks; a list may still need records.
        if not isinstance(fld, RecordList):
            return None

    value = raw or ""
    match fld:
        case TextField():
            return _validate_text(fld, value)
        case DatePicker():
            return _validate_date(fld, value, today or date.today())
        case FileUpload():
            ext = value.rsplit(".", 1)[-1].lower() if "." in value else ""
            allowed = [t.lower().lstrip(".") for t in fld.allowed_types]
            if allowed and ext not in allowed:
                return f"File type must be one of: {', '.join(allowed)}"
        case MultiSelect():
            selected = decode_value(fld, value)
            if fld.max_selection is not None and len(selected) > fld.max_selection:
                return f"Select at most {fld.max_selection} options"
        case RecordList():
            return _validate_records(fld, value, today)
        case CheckBox():
            return None
    return None


def _validate_text(fld: TextField, value: str) -> str | None:
    match fld.input_type:
        case "numeric":
            if not value.strip().isdigit():
                return "Must contain digits only"
        case "decimal":
            if not _DECIMAL_RE.match(value.strip()):
                return "Must be a number"
        case "email":
            if not is_valid_email(value):
                return "Invalid email address"
        case "phone":
            if not is_valid_phone(value):
                return "Invalid phone number"
    if fld.min_length is not None and len(value) < fld.min_length:
        return f"Must be at least {fld.min_length} characters"
    if fld.max_length is not None and len(value) > fld.max_length:
        return f"Must be at most {fld.max_length} characters"
    return None


def _validate_date(fld: DatePicker, value: str, today: date) -> str | None:
    parsed = decode_value(fld, value)
    if parsed is None:
        return "Invalid date"
    if not fld.allow_past_dates and parsed < today:
        return "Date cannot be in the past"
    if not fld.allow_future_dates and parsed > today:
        return "Date cannot be in the future"
    return None


def _validate_records(fld: RecordList, value: str, today: date | None) -> str | None:
    records = decode_value(fld, value)
    if len(records) < fld.min_records:
        return f"Add at least {fld.min_records} entries"
    for i, record in enumerate(records, start=1):
        row = {k: str(v) for k, v in record.items()}
        for sub in fld.record_fields:
            error = validate_field(sub, row.get(sub.id), row, today)
            if error:
                return f"Entry {i}: {sub.label or sub.id}: {error}"
    return None


def validate_step(
    step: StepDefinition,
    form_data: Mapping[str, str],
    today: date | None = None,
) -> tuple[bool, dict[str, str]]:
    """Validate every field of a step, then its cross-field checks.

    Returns (is_valid, field_errors).
    """
    errors: dict[str, str] = {}
    for fld in step.fields:
        error = validate_field(fld, form_data.get(fld.id), form_data, today)
        if error:
            errors[fld.id] = error

    for rule in step.checks:
        if rule.field_id in errors:
            continue
        if not evaluate_condition(rule.expression, form_data):
            errors[rule.field_id] = rule.message

    return not errors, errors


def are_mandatory_fields_filled(step: StepDefinition, form_data: Mapping[str, str]) -> bool:
    """Presence-only check used to enable the Next action."""
    return all(
        not is_required(fld, form_data) or not is_blank(fld, form_data.get(fld.id))
        for fld in step.fields
    )
