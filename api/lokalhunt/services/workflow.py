"""Status state machines for job ads and employer accounts.

Every status write in the repositories goes through ``plan_ad_transition`` or
``plan_employer_transition``. Planning is pure: it validates the requested
action against the entity's current status and returns the column updates and
the activity log entry that must be written in the same unit of work.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from lokalhunt.core.auth import Actor
from lokalhunt.services.errors import (
    InvalidStateTransitionError,
    MouRequiredError,
    RepositoryForbiddenError,
    RepositoryValidationError,
)

AdStatus = Literal["DRAFT", "PENDING_APPROVAL", "APPROVED", "REJECTED", "ARCHIVED"]
EmployerStatus = Literal["PENDING_APPROVAL", "ACTIVE", "BLOCKED", "REJECTED"]
AdAction = Literal["submit", "approve", "reject", "archive"]
EmployerAction = Literal["approve", "reject", "block", "unblock"]

AD_STATUSES: tuple[str, ...] = ("DRAFT", "PENDING_APPROVAL", "APPROVED", "REJECTED", "ARCHIVED")
EMPLOYER_STATUSES: tuple[str, ...] = ("PENDING_APPROVAL", "ACTIVE", "BLOCKED", "REJECTED")
NOTES_MAX_LENGTH = 2000

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Transition:
    action: str
    from_statuses: frozenset[str]
    to_status: str
    action_type: str
    requires_notes: bool = False


AD_TRANSITIONS: dict[str, Transition] = {
    "submit": Transition("submit", frozenset({"DRAFT"}), "PENDING_APPROVAL", "AD_SUBMITTED"),
    "approve": Transition("approve", frozenset({"PENDING_APPROVAL"}), "APPROVED", "AD_APPROVED"),
    "reject": Transition("reject", frozenset({"PENDING_APPROVAL"}), "REJECTED", "AD_REJECTED", requires_notes=True),
    "archive": Transition("archive", frozenset({"APPROVED"}), "ARCHIVED", "AD_ARCHIVED"),
}

EMPLOYER_TRANSITIONS: dict[str, Transition] = {
    "approve": Transition("approve", frozenset({"PENDING_APPROVAL"}), "ACTIVE", "EMPLOYER_APPROVED"),
    "reject": Transition(
        "reject", frozenset({"PENDING_APPROVAL"}), "REJECTED", "EMPLOYER_REJECTED", requires_notes=True
    ),
    "block": Transition("block", frozenset({"ACTIVE"}), "BLOCKED", "EMPLOYER_BLOCKED", requires_notes=True),
    "unblock": Transition("unblock", frozenset({"BLOCKED"}), "ACTIVE", "EMPLOYER_UNBLOCKED"),
}


@dataclass(slots=True)
class PlannedTransition:
    entity_type: Literal["AD", "EMPLOYER"]
    entity_id: str
    entity_name: str | None
    transition: Transition
    from_status: str
    notes: str | None
    actor: Actor
    updates: dict[str, Any] = field(default_factory=dict)

    @property
    def to_status(self) -> str:
        return self.transition.to_status

    @property
    def action_type(self) -> str:
        return self.transition.action_type

    def activity_metadata(self) -> dict[str, Any]:
        return {
            "action": self.transition.action,
            "before": {"status": self.from_status},
            "after": {"status": self.to_status},
        }


def normalize_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    stripped = notes.strip()
    if len(stripped) > NOTES_MAX_LENGTH:
        raise RepositoryValidationError("notes", f"must be at most {NOTES_MAX_LENGTH} characters")
    return stripped or None


def get_ad_transition(action: str) -> Transition:
    transition = AD_TRANSITIONS.get(action)
    if transition is None:
        raise RepositoryValidationError("action", f"unsupported ad action: {action}")
    return transition


def get_employer_transition(action: str) -> Transition:
    transition = EMPLOYER_TRANSITIONS.get(action)
    if transition is None:
        raise RepositoryValidationError("action", f"unsupported employer action: {action}")
    return transition


def validate_transition_input(transition: Transition, notes: str | None) -> str | None:
    """Checks the request payload before any row is read or locked."""
    normalized = normalize_notes(notes)
    if transition.requires_notes and not normalized:
        raise RepositoryValidationError("notes", f"required to {transition.action}")
    return normalized


def plan_ad_transition(
    *,
    ad: Mapping[str, Any],
    action: str,
    actor: Actor,
    notes: str | None,
    mou_active: bool,
    now: datetime,
) -> PlannedTransition:
    transition = get_ad_transition(action)
    normalized_notes = validate_transition_input(transition, notes)
    _authorize_ad_action(ad=ad, action=action, actor=actor)

    current = str(ad["status"])
    if current not in transition.from_statuses:
        raise InvalidStateTransitionError(current, action)

    if action == "approve" and not mou_active:
        raise MouRequiredError(str(ad["employer_id"]))

    updates: dict[str, Any] = {"status": transition.to_status, "updated_at": now}
    if action == "submit":
        updates["submitted_at"] = now
    elif action == "approve":
        updates["approved_at"] = now
        updates["approved_by"] = actor.actor_id
    elif action == "reject":
        updates["rejected_at"] = now
        updates["rejected_by"] = actor.actor_id
        updates["rejection_reason"] = normalized_notes
    elif action == "archive":
        updates["archived_at"] = now

    return PlannedTransition(
        entity_type="AD",
        entity_id=str(ad["id"]),
        entity_name=ad.get("title"),
        transition=transition,
        from_status=current,
        notes=normalized_notes,
        actor=actor,
        updates=updates,
    )


def plan_employer_transition(
    *,
    employer: Mapping[str, Any],
    action: str,
    actor: Actor,
    notes: str | None,
    now: datetime,
) -> PlannedTransition:
    transition = get_employer_transition(action)
    normalized_notes = validate_transition_input(transition, notes)
    if not actor.is_moderator:
        raise RepositoryForbiddenError(f"only branch admins may {action} employers")

    current = str(employer["status"])
    if current not in transition.from_statuses:
        raise InvalidStateTransitionError(current, action)

    return PlannedTransition(
        entity_type="EMPLOYER",
        entity_id=str(employer["id"]),
        entity_name=employer.get("name"),
        transition=transition,
        from_status=current,
        notes=normalized_notes,
        actor=actor,
        updates={"status": transition.to_status, "status_notes": normalized_notes, "updated_at": now},
    )


def _authorize_ad_action(*, ad: Mapping[str, Any], action: str, actor: Actor) -> None:
    is_owner = actor.employer_id is not None and actor.employer_id == str(ad["employer_id"])
    if action == "submit":
        if not is_owner:
            raise RepositoryForbiddenError("only the owning employer may submit an ad")
    elif action == "archive":
        if not (is_owner or actor.is_moderator):
            raise RepositoryForbiddenError("only the owning employer or a branch admin may archive an ad")
    elif not actor.is_moderator:
        raise RepositoryForbiddenError(f"only branch admins may {action} ads")
    elif not city_in_scope(ad.get("city"), actor.review_city):
        raise RepositoryForbiddenError(f"ad is outside the branch admin's city: {actor.review_city}")


def city_in_scope(city: str | None, review_city: str | None) -> bool:
    if review_city is None:
        return True
    return city is not None and city.strip().lower() == review_city.strip().lower()


def log_transition(planned: PlannedTransition) -> None:
    logger.info(
        "status transition entity=%s id=%s action=%s from=%s to=%s actor=%s",
        planned.entity_type,
        planned.entity_id,
        planned.transition.action,
        planned.from_status,
        planned.to_status,
        planned.actor.actor_id,
    )
