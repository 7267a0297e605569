from __future__ import annotations

from datetime import datetime, timezone

import pytest

from lokalhunt.core.auth import Actor
from lokalhunt.services.errors import (
    InvalidStateTransitionError,
    MouRequiredError,
    RepositoryForbiddenError,
    RepositoryValidationError,
)
from lokalhunt.services.workflow import (
    AD_STATUSES,
    AD_TRANSITIONS,
    EMPLOYER_STATUSES,
    EMPLOYER_TRANSITIONS,
    NOTES_MAX_LENGTH,
    plan_ad_transition,
    plan_employer_transition,
)

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
ADMIN = Actor(actor_id="admin-1", role="branch_admin")
OWNER = Actor(actor_id="owner-1", role="employer", employer_id="employer-1")
OTHER_EMPLOYER = Actor(actor_id="owner-2", role="employer", employer_id="employer-2")


def _ad(status: str) -> dict[str, str]:
    return {"id": "ad-1", "employer_id": "employer-1", "title": "Line Cook", "status": status}


def _employer(status: str) -> dict[str, str]:
    return {"id": "employer-1", "name": "Acme Hiring", "status": status}


def test_approve_succeeds_only_from_pending_with_valid_mou() -> None:
    for status in AD_STATUSES:
        for mou_active in (True, False):
            if status == "PENDING_APPROVAL" and mou_active:
                planned = plan_ad_transition(
                    ad=_ad(status), action="approve", actor=ADMIN, notes=None, mou_active=mou_active, now=NOW
                )
                assert planned.to_status == "APPROVED"
                continue
            expected = MouRequiredError if status == "PENDING_APPROVAL" else InvalidStateTransitionError
            with pytest.raises(expected):
                plan_ad_transition(
                    ad=_ad(status), action="approve", actor=ADMIN, notes=None, mou_active=mou_active, now=NOW
                )


def test_approve_records_approver_and_timestamp() -> None:
    planned = plan_ad_transition(
        ad=_ad("PENDING_APPROVAL"), action="approve", actor=ADMIN, notes=None, mou_active=True, now=NOW
    )

    assert planned.updates == {
        "status": "APPROVED",
        "updated_at": NOW,
        "approved_at": NOW,
        "approved_by": "admin-1",
    }
    assert planned.action_type == "AD_APPROVED"
    assert planned.activity_metadata() == {
        "action": "approve",
        "before": {"status": "PENDING_APPROVAL"},
        "after": {"status": "APPROVED"},
    }


def test_reject_stores_trimmed_reason() -> None:
    planned = plan_ad_transition(
        ad=_ad("PENDING_APPROVAL"),
        action="reject",
        actor=ADMIN,
        notes="  salary missing  ",
        mou_active=False,
        now=NOW,
    )

    assert planned.to_status == "REJECTED"
    assert planned.notes == "salary missing"
    assert planned.updates["rejection_reason"] == "salary missing"
    assert planned.updates["rejected_by"] == "admin-1"


@pytest.mark.parametrize("notes", [None, "", "   "])
def test_reject_requires_notes(notes: str | None) -> None:
    with pytest.raises(RepositoryValidationError) as exc_info:
        plan_ad_transition(
            ad=_ad("PENDING_APPROVAL"), action="reject", actor=ADMIN, notes=notes, mou_active=True, now=NOW
        )
    assert exc_info.value.field == "notes"


def test_notes_validation_runs_before_state_check() -> None:
    # A rejected ad cannot be rejected again, but empty notes are reported first.
    with pytest.raises(RepositoryValidationError):
        plan_ad_transition(ad=_ad("REJECTED"), action="reject", actor=ADMIN, notes="", mou_active=True, now=NOW)


def test_notes_longer_than_limit_are_rejected() -> None:
    with pytest.raises(RepositoryValidationError):
        plan_ad_transition(
            ad=_ad("PENDING_APPROVAL"),
            action="reject",
            actor=ADMIN,
            notes="x" * (NOTES_MAX_LENGTH + 1),
            mou_active=True,
            now=NOW,
        )


def test_submit_is_owner_only_and_from_draft() -> None:
    planned = plan_ad_transition(ad=_ad("DRAFT"), action="submit", actor=OWNER, notes=None, mou_active=False, now=NOW)
    assert planned.to_status == "PENDING_APPROVAL"
    assert planned.updates["submitted_at"] == NOW

    with pytest.raises(RepositoryForbiddenError):
        plan_ad_transition(ad=_ad("DRAFT"), action="submit", actor=ADMIN, notes=None, mou_active=True, now=NOW)
    with pytest.raises(RepositoryForbiddenError):
        plan_ad_transition(
            ad=_ad("DRAFT"), action="submit", actor=OTHER_EMPLOYER, notes=None, mou_active=True, now=NOW
        )
    with pytest.raises(InvalidStateTransitionError):
        plan_ad_transition(ad=_ad("APPROVED"), action="submit", actor=OWNER, notes=None, mou_active=True, now=NOW)


def test_archive_allowed_for_owner_and_moderator_from_approved_only() -> None:
    for actor in (OWNER, ADMIN):
        planned = plan_ad_transition(
            ad=_ad("APPROVED"), action="archive", actor=actor, notes=None, mou_active=False, now=NOW
        )
        assert planned.to_status == "ARCHIVED"
        assert planned.updates["archived_at"] == NOW

    with pytest.raises(RepositoryForbiddenError):
        plan_ad_transition(
            ad=_ad("APPROVED"), action="archive", actor=OTHER_EMPLOYER, notes=None, mou_active=True, now=NOW
        )
    with pytest.raises(InvalidStateTransitionError):
        plan_ad_transition(ad=_ad("REJECTED"), action="archive", actor=ADMIN, notes=None, mou_active=True, now=NOW)


def test_employers_cannot_moderate_ads() -> None:
    with pytest.raises(RepositoryForbiddenError):
        plan_ad_transition(
            ad=_ad("PENDING_APPROVAL"), action="approve", actor=OWNER, notes=None, mou_active=True, now=NOW
        )


def test_unknown_action_is_a_validation_error() -> None:
    with pytest.raises(RepositoryValidationError):
        plan_ad_transition(ad=_ad("DRAFT"), action="publish", actor=ADMIN, notes=None, mou_active=True, now=NOW)
    with pytest.raises(RepositoryValidationError):
        plan_employer_transition(employer=_employer("ACTIVE"), action="delete", actor=ADMIN, notes=None, now=NOW)


def test_terminal_ad_statuses_accept_no_transition() -> None:
    for status in ("REJECTED", "ARCHIVED"):
        for action, transition in AD_TRANSITIONS.items():
            actor = OWNER if action == "submit" else ADMIN
            notes = "reason" if transition.requires_notes else None
            with pytest.raises(InvalidStateTransitionError) as exc_info:
                plan_ad_transition(ad=_ad(status), action=action, actor=actor, notes=notes, mou_active=True, now=NOW)
            assert exc_info.value.current_state == status


def test_employer_transition_graph_is_closed() -> None:
    allowed = {
        ("PENDING_APPROVAL", "approve"): "ACTIVE",
        ("PENDING_APPROVAL", "reject"): "REJECTED",
        ("ACTIVE", "block"): "BLOCKED",
        ("BLOCKED", "unblock"): "ACTIVE",
    }
    for status in EMPLOYER_STATUSES:
        for action, transition in EMPLOYER_TRANSITIONS.items():
            notes = "policy violation" if transition.requires_notes else None
            key = (status, action)
            if key in allowed:
                planned = plan_employer_transition(
                    employer=_employer(status), action=action, actor=ADMIN, notes=notes, now=NOW
                )
                assert planned.to_status == allowed[key]
            else:
                with pytest.raises(InvalidStateTransitionError):
                    plan_employer_transition(
                        employer=_employer(status), action=action, actor=ADMIN, notes=notes, now=NOW
                    )


def test_block_requires_notes_and_unblock_does_not() -> None:
    with pytest.raises(RepositoryValidationError):
        plan_employer_transition(employer=_employer("ACTIVE"), action="block", actor=ADMIN, notes=" ", now=NOW)

    planned = plan_employer_transition(employer=_employer("BLOCKED"), action="unblock", actor=ADMIN, notes=None, now=NOW)
    assert planned.action_type == "EMPLOYER_UNBLOCKED"
    assert planned.updates["status_notes"] is None


def test_employer_actions_require_moderator() -> None:
    with pytest.raises(RepositoryForbiddenError):
        plan_employer_transition(employer=_employer("PENDING_APPROVAL"), action="approve", actor=OWNER, notes=None, now=NOW)

    super_admin = Actor(actor_id="root-1", role="super_admin")
    planned = plan_employer_transition(
        employer=_employer("PENDING_APPROVAL"), action="approve", actor=super_admin, notes=None, now=NOW
    )
    assert planned.to_status == "ACTIVE"


def test_branch_admin_reviews_only_ads_in_assigned_city() -> None:
    pune_admin = Actor(actor_id="admin-2", role="branch_admin", assigned_city="Pune")
    pune_ad = {**_ad("PENDING_APPROVAL"), "city": " pune "}
    kochi_ad = {**_ad("PENDING_APPROVAL"), "city": "Kochi"}

    planned = plan_ad_transition(ad=pune_ad, action="approve", actor=pune_admin, notes=None, mou_active=True, now=NOW)
    assert planned.to_status == "APPROVED"

    for action, notes in (("approve", None), ("reject", "wrong branch")):
        with pytest.raises(RepositoryForbiddenError):
            plan_ad_transition(ad=kochi_ad, action=action, actor=pune_admin, notes=notes, mou_active=True, now=NOW)
    with pytest.raises(RepositoryForbiddenError):
        plan_ad_transition(
            ad={**kochi_ad, "city": None}, action="approve", actor=pune_admin, notes=None, mou_active=True, now=NOW
        )

    super_admin = Actor(actor_id="root-1", role="super_admin", assigned_city="Pune")
    planned = plan_ad_transition(ad=kochi_ad, action="approve", actor=super_admin, notes=None, mou_active=True, now=NOW)
    assert planned.to_status == "APPROVED"
