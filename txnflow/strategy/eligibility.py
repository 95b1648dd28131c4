"""Async eligibility checks for a selected real-world entity.

A strategy that supports the check exposes an `EligibilityRules` through
`TransactionStrategy.eligibility_rules()`. The engine runs it when Next is
pressed on an ENTITY_SELECTION step:

    selection --resolve_entity--> Entity --validate_entity--> Verdict
              --navigation_action--> Proceed | Route | ShowComplianceDetail
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from txnflow.errors import to_transaction_error

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class Entity:
    id: str
    name: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, **self.attributes}


class IssueSeverity(str, Enum):
    BLOCKING = "blocking"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class ComplianceIssue:
    category: str
    title: str
    description: str
    severity: IssueSeverity = IssueSeverity.BLOCKING
    details: dict[str, str] = field(default_factory=dict)


# ─── Verdicts ───

@dataclass
class Eligible:
    entity: Entity
    additional_data: dict[str, str] = field(default_factory=dict)


@dataclass
class Ineligible:
    entity: Entity
    reason: str
    suggestion: str | None = None
    pending: bool = False  # awaiting an external decision, resumable later


Verdict = Eligible | Ineligible


# ─── Navigation actions ───

@dataclass
class ProceedToNextStep:
    entity: Entity
    extra_data: dict[str, str] = field(default_factory=dict)


@dataclass
class RouteToConditionalStep:
    entity: Entity
    target_index: int
    condition: str = ""
    condition_data: dict[str, str] = field(default_factory=dict)


@dataclass
class ShowComplianceDetailScreen:
    entity: Entity
    issues: list[ComplianceIssue]
    reason: str
    title: str
    pending: bool = False


NavigationAction = ProceedToNextStep | RouteToConditionalStep | ShowComplianceDetailScreen


@dataclass
class EligibilitySuccess:
    action: NavigationAction


@dataclass
class EligibilityError:
    message: str


EligibilityResult = EligibilitySuccess | EligibilityError


# ─── Rules ───

class EligibilityRules(ABC):
    selection_field = "selectedEntity"

    def resolve_entity(self, selection: str) -> Entity:
        """Turn the raw selection value into an Entity.

        Accepts a plain id, a JSON object, or a one-element JSON array.
        """
        try:
            parsed = json.loads(selection)
        except (TypeError, ValueError):
            return Entity(id=selection)
        if isinstance(parsed, list):
            parsed = parsed[0] if parsed else {}
        if isinstance(parsed, dict):
            attrs = {k: v for k, v in parsed.items() if k not in ("id", "name")}
            return Entity(id=str(parsed.get("id", "")), name=str(parsed.get("name", "")), attributes=attrs)
        return Entity(id=str(parsed))

    @abstractmethod
    async def validate_entity(self, entity: Entity, user_id: str) -> Verdict:
        ...

    def navigation_action(self, verdict: Verdict) -> NavigationAction:
        match verdict:
            case Eligible():
                return ProceedToNextStep(verdict.entity, dict(verdict.additional_data))
            case Ineligible():
                return self.compliance_screen(verdict)
        raise TypeError(f"Unknown verdict: {verdict!r}")

    def compliance_screen(self, verdict: Ineligible) -> ShowComplianceDetailScreen:
        details = {"Suggested action": verdict.suggestion} if verdict.suggestion else {}
        issue = ComplianceIssue(
            category="Eligibility",
            title="Request under processing" if verdict.pending else "Not eligible",
            description=verdict.reason,
            severity=IssueSeverity.WARNING if verdict.pending else IssueSeverity.BLOCKING,
            details=details,
        )
        reason = verdict.reason + (f"\n\n{verdict.suggestion}" if verdict.suggestion else "")
        title = "Request under processing" if verdict.pending else "Request rejected"
        return ShowComplianceDetailScreen(verdict.entity, [issue], reason, title, verdict.pending)

    async def check(self, selection: str, user_id: str) -> EligibilityResult:
        if not selection or selection == "[]":
            return EligibilityError("Select an entity first")
        try:
            entity = self.resolve_entity(selection)
            verdict = await self.validate_entity(entity, user_id)
            return EligibilitySuccess(self.navigation_action(verdict))
        except Exception as e:
            err = to_transaction_error(e)
            logger.warning("Eligibility check failed for %r: %s", selection, err.message)
            return EligibilityError(err.user_message)


class InspectionStatusRules(EligibilityRules):
    """Eligibility from an inspection-status lookup.

    Inspected and VALID proceeds (or routes, when `route` returns an index),
    PENDING is a resumable interrupt, anything else is rejected.
    """

    def __init__(
        self,
        fetch_status: Callable[[Entity], Awaitable[dict[str, Any]]],
        route: Callable[[dict[str, str]], int | None] | None = None,
        selection_field: str = "selectedEntity",
    ):
        self.fetch_status = fetch_status
        self.route = route
        self.selection_field = selection_field

    async def validate_entity(self, entity: Entity, user_id: str) -> Verdict:
        if entity.id.startswith("new_"):
            return Ineligible(entity, "The entity has not been inspected",
                              "An inspection is required before continuing")

        info = await self.fetch_status(entity)
        status = str(info.get("status", "")).upper()
        inspected = bool(info.get("isInspected", info.get("is_inspected", False)))

        if inspected and status == "VALID":
            data = {"inspectionStatus": "VALID", "isInspected": "true"}
            for key in ("inspectionDate", "inspectionType", "certificateNumber"):
                if info.get(key):
                    data[key] = str(info[key])
            return Eligible(entity, data)
        if status == "PENDING":
            return Ineligible(entity, "The request is under processing",
                              "Wait until the inspection has been verified", pending=True)
        return Ineligible(entity, "The entity was not inspected or the inspection was rejected",
                          info.get("remarks") or "An inspection is required before continuing")

    def navigation_action(self, verdict: Verdict) -> NavigationAction:
        if isinstance(verdict, Eligible) and self.route is not None:
            target = self.route(verdict.additional_data)
            if target is not None:
                return RouteToConditionalStep(verdict.entity, target, "inspection", dict(verdict.additional_data))
        return super().navigation_action(verdict)


# ─── Tracker ───

class EligibilityStatus(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"
    ERROR = "error"


class EligibilityTracker:
    """Idle -> Validating -> Valid | Invalid | Error.

    Valid and Invalid stick until the selection changes; Error can be retried.
    """

    def __init__(self):
        self.status = EligibilityStatus.IDLE
        self.selection: str | None = None
        self.result: EligibilityResult | None = None

    def reset(self) -> None:
        self.status = EligibilityStatus.IDLE
        self.selection = None
        self.result = None

    def cached(self, selection: str) -> EligibilityResult | None:
        if selection != self.selection:
            return None
        if self.status in (EligibilityStatus.VALID, EligibilityStatus.INVALID):
            return self.result
        return None

    def begin(self, selection: str) -> None:
        self.status = EligibilityStatus.VALIDATING
        self.selection = selection
        self.result = None

    def finish(self, result: EligibilityResult) -> None:
        self.result = result
        match result:
            case EligibilityError():
                self.status = EligibilityStatus.ERROR
            case EligibilitySuccess(action=ShowComplianceDetailScreen()):
                self.status = EligibilityStatus.INVALID
            case _:
                self.status = EligibilityStatus.VALID
