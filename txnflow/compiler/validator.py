"""Static checks for transaction definitions, run before a definition is loaded."""
from __future__ import annotations

from typing import TYPE_CHECKING

from txnflow.types import DropDown, MultiSelect, RecordList, StepKind

if TYPE_CHECKING:
    from txnflow.types import TransactionDefinition


class ValidationIssue:
    def __init__(self, level: str, message: str, step: str | None = None):
        self.level = level  # "error" | "warning"
        self.message = message
        self.step = step

    def __str__(self):
        prefix = f"[{self.step}] " if self.step else ""
        return f"{self.level.upper()}: {prefix}{self.message}"


def validate_definition(defn: TransactionDefinition) -> list[ValidationIssue]:
    """Run all static checks on a transaction definition."""
    issues: list[ValidationIssue] = []

    if not defn.steps:
        issues.append(ValidationIssue("error", "Transaction has no steps"))
        return issues

    issues.extend(_check_field_ids(defn))
    issues.extend(_check_routes(defn))
    issues.extend(_check_lookups(defn))
    issues.extend(_check_clears(defn))
    issues.extend(_check_records(defn))
    issues.extend(_check_layout(defn))
    return issues


def format_issues(issues: list[ValidationIssue]) -> str:
    if not issues:
        return ""
    lines = []
    errs = [i for i in issues if i.level == "error"]
    warns = [i for i in issues if i.level == "warning"]
    if errs:
        lines.append(f"  {len(errs)} error(s):")
        for i in errs:
            lines.append(f"    ✗ {i}")
    if warns:
        lines.append(f"  {len(warns)} warning(s):")
        for i in warns:
            lines.append(f"    ⚠ {i}")
    return "\n".join(lines)


# ─── Checks ───

def _check_field_ids(defn: TransactionDefinition) -> list[ValidationIssue]:
    """Field ids must be unique across unconditional content.

    Conditional steps and fields may reuse an id as alternatives.
    """
    issues: list[ValidationIssue] = []
    owner: dict[str, str] = {}
    for step in defn.steps:
        if step.when:
            continue
        for fld in step.fields:
            if fld.when:
                continue
            if fld.id in owner:
                issues.append(ValidationIssue(
                    "error", f"Field id '{fld.id}' already used in step '{owner[fld.id]}'", step.name
                ))
            else:
                owner[fld.id] = step.name
    return issues


def _check_routes(defn: TransactionDefinition) -> list[ValidationIssue]:
    """Every route target must name a step."""
    issues: list[ValidationIssue] = []
    names = set(defn.step_names())
    for step in defn.steps:
        routes = list(step.routes)
        if step.eligibility:
            routes.extend(step.eligibility.routes)
        for r in routes:
            if r.target not in names:
                issues.append(ValidationIssue("error", f"Route target not found: '{r.target}'", step.name))
    return issues


def _check_lookups(defn: TransactionDefinition) -> list[ValidationIssue]:
    """Lookup keys used by steps and fields must be declared."""
    issues: list[ValidationIssue] = []
    for step in defn.steps:
        for key in step.lookups:
            if key not in defn.lookups:
                issues.append(ValidationIssue("error", f"Undeclared lookup: '{key}'", step.name))
        for fld in step.fields:
            if isinstance(fld, (DropDown, MultiSelect)):
                if fld.lookup and fld.lookup not in defn.lookups:
                    issues.append(ValidationIssue(
                        "error", f"Field '{fld.id}' uses undeclared lookup '{fld.lookup}'", step.name
                    ))
                if not fld.options and not fld.lookup:
                    issues.append(ValidationIssue(
                        "warning", f"Field '{fld.id}' has no options and no lookup", step.name
                    ))
    return issues


def _check_clears(defn: TransactionDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    known = {fld.id for step in defn.steps for fld in step.fields}
    for step in defn.steps:
        for fld in step.fields:
            for dep in fld.clears:
                if dep not in known:
                    issues.append(ValidationIssue(
                        "error", f"Field '{fld.id}' clears unknown field '{dep}'", step.name
                    ))
    return issues


def _check_records(defn: TransactionDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for step in defn.steps:
        for fld in step.fields:
            if isinstance(fld, RecordList) and not fld.record_fields:
                issues.append(ValidationIssue("error", f"Record list '{fld.id}' has no record fields", step.name))
    return issues


def _check_layout(defn: TransactionDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    first = defn.steps[0]
    if first.when:
        issues.append(ValidationIssue("warning", "First step is conditional; transaction may start empty", first.name))
    for step in defn.steps[:-1]:
        if step.kind == StepKind.REVIEW:
            issues.append(ValidationIssue("warning", "Review step is not the last step", step.name))
    return issues
