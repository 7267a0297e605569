from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from lokalhunt.services.bulk import bulk_transition_ads, bulk_transition_employers, normalize_bulk_ids, run_bulk
from lokalhunt.services.errors import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)


def test_normalize_ids_strips_and_dedupes_in_order() -> None:
    assert normalize_bulk_ids([" a ", "b", "a", "", "c"], max_items=10) == ["a", "b", "c"]


def test_normalize_ids_rejects_empty_and_oversized_batches() -> None:
    with pytest.raises(RepositoryValidationError):
        normalize_bulk_ids(["", "  "], max_items=10)
    with pytest.raises(RepositoryValidationError):
        normalize_bulk_ids([f"id-{index}" for index in range(4)], max_items=3)


def test_run_bulk_collects_item_failures_without_aborting() -> None:
    async def _operation(item_id: str) -> None:
        if item_id.startswith("missing"):
            raise RepositoryNotFoundError("AD", item_id)

    result = asyncio.run(
        run_bulk(["ok-1", "missing-1", "ok-2"], _operation, name="test", max_items=10, concurrency=2)
    )

    assert result.succeeded == ["ok-1", "ok-2"]
    assert [(item.id, item.code) for item in result.failed] == [("missing-1", "not_found")]
    assert result.as_dict()["succeeded_count"] == 2
    assert result.as_dict()["failed_count"] == 1


def test_run_bulk_propagates_infrastructure_errors() -> None:
    async def _operation(_: str) -> None:
        raise RepositoryUnavailableError("database unavailable")

    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(run_bulk(["a"], _operation, name="test", max_items=10, concurrency=1))


def test_run_bulk_cancels_pending_items_when_aborted() -> None:
    committed: list[str] = []

    async def _operation(item_id: str) -> None:
        if item_id == "a":
            raise RepositoryUnavailableError("database unavailable")
        await asyncio.sleep(0.05)
        committed.append(item_id)

    async def _scenario() -> list[str]:
        with pytest.raises(RepositoryUnavailableError):
            await run_bulk(["a", "b", "c"], _operation, name="test", max_items=10, concurrency=3)
        await asyncio.sleep(0.2)
        return committed

    assert asyncio.run(_scenario()) == []


def test_bulk_approve_reports_mou_and_state_failures(repository, seed, moderator) -> None:
    with_mou = seed.employer(name="Acme Hiring")
    without_mou = seed.employer(name="Bolt Logistics", mou=False)
    pending_1 = seed.ad(with_mou, title="Picker")
    pending_2 = seed.ad(with_mou, title="Packer")
    blocked_by_mou = seed.ad(without_mou, title="Driver")
    draft = seed.ad(with_mou, title="Loader", submit=False)

    ids = [pending_1["id"], blocked_by_mou["id"], pending_2["id"], draft["id"], "no-such-ad"]
    result = asyncio.run(
        bulk_transition_ads(repository, ids=ids, action="approve", actor=moderator, max_items=100, concurrency=4)
    )

    assert result.succeeded == [pending_1["id"], pending_2["id"]]
    failures = {item.id: item.code for item in result.failed}
    assert failures == {
        blocked_by_mou["id"]: "mou_required",
        draft["id"]: "invalid_state_transition",
        "no-such-ad": "not_found",
    }
    assert asyncio.run(repository.get_ad(blocked_by_mou["id"]))["status"] == "PENDING_APPROVAL"

    approved_entries = [entry for entry in repository.activity if entry["action_type"] == "AD_APPROVED"]
    assert sorted(entry["entity_id"] for entry in approved_entries) == sorted(result.succeeded)


def test_bulk_reject_without_notes_fails_before_any_item(repository, seed, moderator) -> None:
    employer = seed.employer()
    ad = seed.ad(employer)
    entries_before = len(repository.activity)

    with pytest.raises(RepositoryValidationError):
        asyncio.run(
            bulk_transition_ads(
                repository, ids=[ad["id"]], action="reject", actor=moderator, notes="  ", max_items=100, concurrency=4
            )
        )

    assert asyncio.run(repository.get_ad(ad["id"]))["status"] == "PENDING_APPROVAL"
    assert len(repository.activity) == entries_before


def test_bulk_employer_approval_skips_already_active(repository, seed, moderator) -> None:
    pending = seed.employer(name="Pending Co", status="PENDING_APPROVAL", mou=False)
    active = seed.employer(name="Active Co", mou=False)

    result = asyncio.run(
        bulk_transition_employers(
            repository,
            ids=[pending["id"], active["id"]],
            action="approve",
            actor=moderator,
            max_items=100,
            concurrency=2,
        )
    )

    assert result.succeeded == [pending["id"]]
    assert [item.id for item in result.failed] == [active["id"]]
    assert result.failed[0].reason == "cannot approve from status ACTIVE"


def test_expired_mou_fails_bulk_approval(repository, seed, moderator) -> None:
    employer = seed.employer(mou=False)
    ad = seed.ad(employer)
    now = datetime.now(timezone.utc)
    asyncio.run(
        repository.create_mou(
            actor=moderator,
            employer_id=employer["id"],
            fee_type="FIXED",
            fee_value=100.0,
            signed_at=now - timedelta(days=60),
            valid_until=now + timedelta(seconds=1),
        )
    )
    later = now + timedelta(days=1)

    async def _approve(ad_id: str) -> None:
        await repository.transition_ad(ad_id=ad_id, action="approve", actor=moderator, now=later)

    result = asyncio.run(run_bulk([ad["id"]], _approve, name="ads.approve", max_items=10, concurrency=1))

    assert result.succeeded == []
    assert result.failed[0].code == "mou_required"
