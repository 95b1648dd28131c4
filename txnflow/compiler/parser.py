"""Parse YAML transaction definitions into the definition IR."""
from __future__ import annotations

import dataclasses
import re
from typing import Any

import yaml

from txnflow.types import (
    FIELD_KINDS,
    CrossFieldRule,
    EligibilitySpec,
    LookupSpec,
    Route,
    StepKind,
    StepSpec,
    TransactionDefinition,
)

# camelCase / legacy key -> internal key mapping
KEYWORD_MAP = {
    "allowedTypes": "allowed_types",
    "maxSizeMB": "max_size_mb",
    "maxSizeMb": "max_size_mb",
    "requiredWhen": "required_when",
    "rebuildOnChange": "rebuild_on_change",
    "inputType": "input_type",
    "minLength": "min_length",
    "maxLength": "max_length",
    "maxSelection": "max_selection",
    "minRecords": "min_records",
    "allowPastDates": "allow_past_dates",
    "allowFutureDates": "allow_future_dates",
    "lineItems": "line_items",
    "requiredLookups": "lookups",
    "selectionField": "selection_field",
    "stepKind": "kind",
    "verify": "verify_endpoint",
    "lookupOnBlur": "verify_endpoint",
    "if": "when",
    "condition": "when",
}

# Field type aliases -> (kind, implied attributes)
TYPE_ALIASES: dict[str, tuple[str, dict[str, Any]]] = {
    "number": ("text", {"input_type": "numeric"}),
    "numeric": ("text", {"input_type": "numeric"}),
    "decimal": ("text", {"input_type": "decimal"}),
    "email": ("text", {"input_type": "email"}),
    "phone": ("text", {"input_type": "phone"}),
    "select": ("dropdown", {}),
    "datepicker": ("date", {}),
    "multi_select": ("multiselect", {}),
    "owner_list": ("records", {}),
    "engine_list": ("records", {}),
    "sailor_list": ("records", {}),
    "payment": ("computed", {}),
}


def _normalize_key(key: str) -> str:
    return KEYWORD_MAP.get(key, key)


def _normalize(obj):
    if isinstance(obj, dict):
        return {_normalize_key(str(k)): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_normalize(item) for item in obj]
    return obj


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


# ─── Fields ───

def _parse_field(raw, where: str):
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: field must be a mapping")
    body = dict(raw)
    field_id = body.pop("id", None)
    if not field_id:
        raise ValueError(f"{where}: field is missing an id")

    type_name = str(body.pop("type", "text")).lower()
    kind, implied = TYPE_ALIASES.get(type_name, (type_name, {}))
    cls = FIELD_KINDS.get(kind)
    if cls is None:
        raise ValueError(f'{where}: unknown field type "{type_name}" for "{field_id}"')

    # Legacy numeric flags
    if body.pop("isNumeric", False):
        implied = {**implied, "input_type": "numeric"}
    if body.pop("isDecimal", False):
        implied = {**implied, "input_type": "decimal"}

    kwargs: dict[str, Any] = {**implied}
    allowed = {f.name for f in dataclasses.fields(cls)}
    for key, value in body.items():
        if key in allowed:
            kwargs[key] = value

    if kind == "records":
        record_raw = body.get("fields") or body.get("record_fields") or []
        kwargs["record_fields"] = [
            _parse_field(sub, f"{where} > {field_id}") for sub in _as_list(record_raw)
        ]
    if kind == "computed":
        kwargs["line_items"] = [_parse_line_item(item, where) for item in _as_list(body.get("line_items"))]
    for key in ("clears", "options", "allowed_types"):
        if key in kwargs:
            kwargs[key] = [str(v) for v in _as_list(kwargs[key])]
    kwargs.setdefault("label", str(field_id))

    return cls(id=str(field_id), **kwargs)


def _parse_line_item(item, where: str) -> tuple[str, float]:
    if isinstance(item, dict):
        return (str(item.get("name", "")), float(item.get("amount", 0)))
    if isinstance(item, (list, tuple)) and len(item) == 2:
        return (str(item[0]), float(item[1]))
    raise ValueError(f"{where}: invalid line item {item!r}")


# ─── Steps ───

def _parse_routes(raw) -> list[Route]:
    routes: list[Route] = []
    for item in _as_list(raw):
        if isinstance(item, str):
            routes.append(Route(target=item))
        elif isinstance(item, dict):
            target = item.get("to") or item.get("go") or item.get("target")
            if target:
                routes.append(Route(target=str(target), condition=item.get("when")))
    return routes


def _parse_checks(raw, where: str) -> list[CrossFieldRule]:
    checks: list[CrossFieldRule] = []
    for item in _as_list(raw):
        if not isinstance(item, dict):
            raise ValueError(f"{where}: check must be a mapping")
        expression = item.get("assert") or item.get("expression")
        field_id = item.get("field")
        if not expression or not field_id:
            raise ValueError(f'{where}: check needs "assert" and "field"')
        checks.append(CrossFieldRule(str(expression), str(field_id), str(item.get("message", "Invalid value"))))
    return checks


def _parse_kind(raw, where: str) -> StepKind:
    if raw is None:
        return StepKind.CUSTOM
    try:
        return StepKind(str(raw).lower())
    except ValueError:
        raise ValueError(f'{where}: unknown step kind "{raw}"') from None


def _parse_step(raw, idx: int) -> StepSpec:
    if not isinstance(raw, dict):
        raise ValueError(f"Step {idx + 1}: expected a mapping")
    title = str(raw.get("title", ""))
    name = str(raw.get("name") or _slug(title) or f"step_{idx + 1}")
    where = f"[{name}]"

    eligibility = None
    if isinstance(raw.get("eligibility"), dict):
        el = raw["eligibility"]
        if not el.get("endpoint"):
            raise ValueError(f"{where}: eligibility needs an endpoint")
        eligibility = EligibilitySpec(
            endpoint=str(el["endpoint"]),
            selection_field=str(el.get("selection_field") or el.get("field") or "selectedEntity"),
            routes=_parse_routes(el.get("routes")),
        )

    return StepSpec(
        name=name,
        title=title or name.replace("_", " ").capitalize(),
        kind=_parse_kind(raw.get("kind"), where),
        description=str(raw.get("description", "")),
        fields=[_parse_field(f, where) for f in _as_list(raw.get("fields"))],
        lookups=[str(k) for k in _as_list(raw.get("lookups"))],
        endpoint=raw.get("endpoint"),
        when=raw.get("when"),
        routes=_parse_routes(raw.get("routes")),
        checks=_parse_checks(raw.get("checks"), where),
        eligibility=eligibility,
    )


def _parse_lookups(raw) -> dict[str, LookupSpec]:
    lookups: dict[str, LookupSpec] = {}
    if raw is None:
        return lookups
    if not isinstance(raw, dict):
        raise ValueError('Invalid definition: "lookups" must be a mapping')
    for key, body in raw.items():
        if isinstance(body, str):
            lookups[key] = LookupSpec(key=key, endpoint=body)
        elif isinstance(body, list):
            lookups[key] = LookupSpec(key=key, options=[str(v) for v in body])
        elif isinstance(body, dict):
            lookups[key] = LookupSpec(
                key=key,
                endpoint=str(body.get("endpoint", "")),
                preload=bool(body.get("preload", False)),
                options=[str(v) for v in _as_list(body.get("options"))],
            )
        else:
            lookups[key] = LookupSpec(key=key)
    return lookups


def parse_transaction_yaml(content: str) -> TransactionDefinition:
    raw = yaml.safe_load(content)
    if not isinstance(raw, dict):
        raise ValueError("Invalid YAML: expected a mapping")

    normalized = _normalize(raw)
    raw_steps = normalized.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ValueError('Invalid definition: missing "steps" list')

    steps = [_parse_step(s, i) for i, s in enumerate(raw_steps)]

    seen: dict[str, int] = {}
    for s in steps:
        seen[s.name] = seen.get(s.name, 0) + 1
    dupes = [n for n, c in seen.items() if c > 1]
    if dupes:
        raise ValueError(f"Duplicate step names: {', '.join(dupes)}")

    submit = normalized.get("submit")
    submit_endpoint = submit.get("endpoint") if isinstance(submit, dict) else submit

    name = str(normalized.get("name", "unnamed"))
    return TransactionDefinition(
        name=name,
        title=str(normalized.get("title", name)),
        description=str(normalized.get("description", "")),
        lookups=_parse_lookups(normalized.get("lookups")),
        steps=steps,
        submit_endpoint=submit_endpoint,
    )
