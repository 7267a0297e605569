from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from lokalhunt.core.auth import Actor
from lokalhunt.services.audit import ActivityLogQuery, build_entry, build_transition_entry, entry_matches
from lokalhunt.services.errors import (
    InvalidStateTransitionError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from lokalhunt.services.mou import (
    as_utc,
    has_active_mou,
    is_mou_expired,
    is_mou_expiring,
    is_mou_valid,
    validate_mou_terms,
)
from lokalhunt.services.workflow import (
    PlannedTransition,
    city_in_scope,
    get_ad_transition,
    get_employer_transition,
    log_transition,
    normalize_notes,
    plan_ad_transition,
    plan_employer_transition,
    validate_transition_input,
)

logger = logging.getLogger(__name__)


class InMemoryRepository:
    """Process-local repository with the same contract as PostgresRepository.

    Each mutation holds a per-entity lock, works on a copy and commits the copy
    together with its activity log entries, so a failed log append leaves the
    entity untouched.
    """

    def __init__(self) -> None:
        self.employers: dict[str, dict[str, Any]] = {}
        self.companies: dict[str, dict[str, Any]] = {}
        self.ads: dict[str, dict[str, Any]] = {}
        self.mous: dict[str, dict[str, Any]] = {}
        self.activity: list[dict[str, Any]] = []
        self._activity_ids = itertools.count(1)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def close(self) -> None:
        return None

    # Employers

    async def register_employer(self, *, user_id: str, name: str, email: str) -> dict[str, Any]:
        normalized_name = _require_text(name, "name")
        normalized_email = _require_text(email, "email").lower()
        async with self._locks[f"user:{user_id}"]:
            if any(row["user_id"] == user_id for row in self.employers.values()):
                raise RepositoryValidationError("user_id", "employer already registered for this user")
            now = _now()
            employer = {
                "id": str(uuid4()),
                "user_id": user_id,
                "name": normalized_name,
                "email": normalized_email,
                "status": "PENDING_APPROVAL",
                "status_notes": None,
                "created_at": now,
                "updated_at": now,
            }
            self.employers[employer["id"]] = employer
        logger.info("employer registered employer_id=%s user_id=%s", employer["id"], user_id)
        return self._employer_out(employer, now=now)

    async def get_employer(self, employer_id: str) -> dict[str, Any]:
        employer = self._require("EMPLOYER", self.employers, employer_id)
        now = _now()
        row = self._employer_out(employer, now=now)
        row["mous"] = [self._mou_out(mou, now=now) for mou in self._employer_mous(employer_id)]
        return row

    async def list_employers(
        self,
        *,
        status: str | None = None,
        has_active_mou: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        now = _now()
        rows = [self._employer_out(row, now=now) for row in self.employers.values()]
        if status:
            rows = [row for row in rows if row["status"] == status]
        if has_active_mou is not None:
            rows = [row for row in rows if row["has_active_mou"] is has_active_mou]
        rows.sort(key=lambda row: row["updated_at"], reverse=True)
        return rows[offset : offset + limit]

    async def transition_employer(
        self,
        *,
        employer_id: str,
        action: str,
        actor: Actor,
        notes: str | None = None,
    ) -> dict[str, Any]:
        validate_transition_input(get_employer_transition(action), notes)
        async with self._locks[f"employer:{employer_id}"]:
            employer = self._require("EMPLOYER", self.employers, employer_id)
            now = _now()
            planned = plan_employer_transition(employer=employer, action=action, actor=actor, notes=notes, now=now)
            updated = self._commit_transition(self.employers, employer, planned, now=now)
        log_transition(planned)
        return self._employer_out(updated, now=now)

    # Companies & ads

    async def create_company(self, *, actor: Actor, name: str, city: str | None) -> dict[str, Any]:
        employer = self._require_actor_employer(actor)
        if employer["status"] in {"REJECTED", "BLOCKED"}:
            raise RepositoryForbiddenError(f"employer is {employer['status']}")
        now = _now()
        company = {
            "id": str(uuid4()),
            "employer_id": employer["id"],
            "name": _require_text(name, "name"),
            "city": (city or "").strip() or None,
            "created_at": now,
            "updated_at": now,
        }
        self.companies[company["id"]] = company
        return dict(company)

    async def create_ad(
        self,
        *,
        actor: Actor,
        company_id: str,
        title: str,
        description: str | None,
        city: str | None,
        category_name: str | None,
        category_fields: dict[str, Any],
    ) -> dict[str, Any]:
        employer = self._require_actor_employer(actor)
        if employer["status"] != "ACTIVE":
            raise RepositoryForbiddenError("only active employers may create ads")
        company = self._require("COMPANY", self.companies, company_id)
        if company["employer_id"] != employer["id"]:
            raise RepositoryForbiddenError("company belongs to another employer")
        now = _now()
        ad = {
            "id": str(uuid4()),
            "employer_id": employer["id"],
            "company_id": company_id,
            "title": _require_text(title, "title"),
            "description": description,
            "city": city,
            "category_name": category_name,
            "category_fields": copy.deepcopy(category_fields),
            "status": "DRAFT",
            "submitted_at": None,
            "approved_at": None,
            "approved_by": None,
            "rejected_at": None,
            "rejected_by": None,
            "rejection_reason": None,
            "archived_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self.ads[ad["id"]] = ad
        return self._ad_out(ad, now=now)

    async def get_ad(self, ad_id: str) -> dict[str, Any]:
        ad = self._require("AD", self.ads, ad_id)
        return self._ad_out(ad, now=_now())

    async def list_ads(
        self,
        *,
        status: str | None = None,
        employer_id: str | None = None,
        has_active_mou: bool | None = None,
        city: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        now = _now()
        rows = [self._ad_out(row, now=now) for row in self.ads.values()]
        if status:
            rows = [row for row in rows if row["status"] == status]
        if employer_id:
            rows = [row for row in rows if row["employer_id"] == employer_id]
        if has_active_mou is not None:
            rows = [row for row in rows if row["employer_has_active_mou"] is has_active_mou]
        if city:
            rows = [row for row in rows if city_in_scope(row.get("city"), city)]
        rows.sort(key=lambda row: row["updated_at"], reverse=True)
        return rows[offset : offset + limit]

    async def transition_ad(
        self,
        *,
        ad_id: str,
        action: str,
        actor: Actor,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        validate_transition_input(get_ad_transition(action), notes)
        async with self._locks[f"ad:{ad_id}"]:
            ad = self._require("AD", self.ads, ad_id)
            current = as_utc(now) or _now()
            mou_active = has_active_mou(self._employer_mous(ad["employer_id"]), current)
            planned = plan_ad_transition(
                ad=ad, action=action, actor=actor, notes=notes, mou_active=mou_active, now=current
            )
            updated = self._commit_transition(self.ads, ad, planned, now=current)
        log_transition(planned)
        return self._ad_out(updated, now=current)

    # MOUs

    async def list_mous(
        self,
        *,
        employer_id: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        now = _now()
        rows = list(self.mous.values())
        if employer_id:
            rows = [row for row in rows if row["employer_id"] == employer_id]
        if is_active is not None:
            rows = [row for row in rows if row["is_active"] is is_active]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return [self._mou_out(row, now=now) for row in rows[offset : offset + limit]]

    async def get_mou(self, mou_id: str) -> dict[str, Any]:
        return self._mou_out(self._require("MOU", self.mous, mou_id), now=_now())

    async def create_mou(
        self,
        *,
        actor: Actor,
        employer_id: str,
        fee_type: str,
        fee_value: float,
        signed_at: datetime | None = None,
        valid_until: datetime | None = None,
        terms: str | None = None,
        notes: str | None = None,
        activate: bool = True,
    ) -> dict[str, Any]:
        _require_moderator(actor, "create MOUs")
        now = _now()
        mou_terms = validate_mou_terms(
            fee_type=fee_type,
            fee_value=fee_value,
            signed_at=signed_at,
            valid_until=valid_until,
            terms=terms,
            notes=notes,
            now=now,
        )
        async with self._locks[f"employer-mous:{employer_id}"]:
            employer = self._require("EMPLOYER", self.employers, employer_id)
            if employer["status"] == "REJECTED":
                raise RepositoryValidationError("employer_id", "cannot issue an MOU to a rejected employer")
            if activate and is_mou_expired({"valid_until": mou_terms.valid_until}, now):
                raise RepositoryValidationError("valid_until", "cannot activate an expired MOU")

            existing = self._employer_mous(employer_id)
            mou = {
                "id": str(uuid4()),
                "employer_id": employer_id,
                "branch_admin_id": actor.actor_id,
                "fee_type": mou_terms.fee_type,
                "fee_value": mou_terms.fee_value,
                "signed_at": mou_terms.signed_at,
                "valid_until": mou_terms.valid_until,
                "is_active": activate,
                "version": max((row["version"] for row in existing), default=0) + 1,
                "terms": mou_terms.terms,
                "notes": mou_terms.notes,
                "created_at": now,
                "updated_at": now,
            }
            staged: dict[str, dict[str, Any]] = {mou["id"]: mou}
            entries = [
                self._mou_entry("MOU_CREATED", mou, employer, actor, mou_terms.notes, {"version": mou["version"]}, now)
            ]
            if activate:
                entries.extend(self._stage_supersede(existing, staged, employer, actor, now))
                entries.append(
                    self._mou_entry("MOU_ACTIVATED", mou, employer, actor, None, {"version": mou["version"]}, now)
                )
            self._commit_mous(staged, entries)
        logger.info("mou created mou_id=%s employer_id=%s active=%s", mou["id"], employer_id, activate)
        return self._mou_out(mou, now=now)

    async def update_mou(
        self,
        *,
        mou_id: str,
        actor: Actor,
        fee_type: str,
        fee_value: float,
        signed_at: datetime | None = None,
        valid_until: datetime | None = None,
        terms: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        _require_moderator(actor, "update MOUs")
        now = _now()
        mou = self._require("MOU", self.mous, mou_id)
        async with self._locks[f"employer-mous:{mou['employer_id']}"]:
            mou = self._require("MOU", self.mous, mou_id)
            mou_terms = validate_mou_terms(
                fee_type=fee_type,
                fee_value=fee_value,
                signed_at=signed_at if signed_at is not None else mou["signed_at"],
                valid_until=valid_until,
                terms=terms,
                notes=notes,
                now=now,
            )
            employer = self._require("EMPLOYER", self.employers, mou["employer_id"])
            before = {key: mou[key] for key in ("fee_type", "fee_value", "signed_at", "valid_until", "version")}
            updated = {
                **mou,
                "fee_type": mou_terms.fee_type,
                "fee_value": mou_terms.fee_value,
                "signed_at": mou_terms.signed_at,
                "valid_until": mou_terms.valid_until,
                "terms": mou_terms.terms,
                "notes": mou_terms.notes,
                "version": max(row["version"] for row in self._employer_mous(mou["employer_id"])) + 1,
                "updated_at": now,
            }
            after = {key: updated[key] for key in before}
            entry = self._mou_entry(
                "MOU_UPDATED",
                updated,
                employer,
                actor,
                mou_terms.notes,
                {"before": _jsonable(before), "after": _jsonable(after)},
                now,
            )
            self._commit_mous({mou_id: updated}, [entry])
        return self._mou_out(updated, now=now)

    async def activate_mou(self, *, mou_id: str, actor: Actor) -> dict[str, Any]:
        _require_moderator(actor, "activate MOUs")
        mou = self._require("MOU", self.mous, mou_id)
        async with self._locks[f"employer-mous:{mou['employer_id']}"]:
            mou = self._require("MOU", self.mous, mou_id)
            employer = self._require("EMPLOYER", self.employers, mou["employer_id"])
            now = _now()
            if mou["is_active"]:
                raise InvalidStateTransitionError("ACTIVE", "activate")
            if is_mou_expired(mou, now):
                raise InvalidStateTransitionError("EXPIRED", "activate")
            updated = {**mou, "is_active": True, "updated_at": now}
            staged: dict[str, dict[str, Any]] = {mou_id: updated}
            others = [row for row in self._employer_mous(mou["employer_id"]) if row["id"] != mou_id]
            entries = self._stage_supersede(others, staged, employer, actor, now)
            entries.append(
                self._mou_entry(
                    "MOU_ACTIVATED",
                    updated,
                    employer,
                    actor,
                    None,
                    {"before": {"is_active": False}, "after": {"is_active": True}},
                    now,
                )
            )
            self._commit_mous(staged, entries)
        return self._mou_out(updated, now=now)

    async def deactivate_mou(self, *, mou_id: str, actor: Actor, notes: str | None = None) -> dict[str, Any]:
        _require_moderator(actor, "deactivate MOUs")
        normalized_notes = normalize_notes(notes)
        mou = self._require("MOU", self.mous, mou_id)
        async with self._locks[f"employer-mous:{mou['employer_id']}"]:
            mou = self._require("MOU", self.mous, mou_id)
            employer = self._require("EMPLOYER", self.employers, mou["employer_id"])
            if not mou["is_active"]:
                raise InvalidStateTransitionError("INACTIVE", "deactivate")
            now = _now()
            updated = {**mou, "is_active": False, "updated_at": now}
            entry = self._mou_entry(
                "MOU_DEACTIVATED",
                updated,
                employer,
                actor,
                normalized_notes,
                {"reason": "manual", "before": {"is_active": True}, "after": {"is_active": False}},
                now,
            )
            self._commit_mous({mou_id: updated}, [entry])
        return self._mou_out(updated, now=now)

    async def deactivate_expired_mous(self, *, actor: Actor, limit: int = 100) -> int:
        _require_moderator(actor, "deactivate MOUs")
        now = _now()
        expired = [row for row in self.mous.values() if row["is_active"] and is_mou_expired(row, now)]
        expired.sort(key=lambda row: row["valid_until"])
        count = 0
        for candidate in expired[:limit]:
            async with self._locks[f"employer-mous:{candidate['employer_id']}"]:
                mou = self.mous[candidate["id"]]
                if not (mou["is_active"] and is_mou_expired(mou, now)):
                    continue
                employer = self.employers[mou["employer_id"]]
                updated = {**mou, "is_active": False, "updated_at": now}
                entry = self._mou_entry(
                    "MOU_DEACTIVATED",
                    updated,
                    employer,
                    actor,
                    None,
                    {"reason": "expired", "valid_until": mou["valid_until"].isoformat()},
                    now,
                )
                self._commit_mous({mou["id"]: updated}, [entry])
                count += 1
        if count:
            logger.info("deactivated expired mous count=%s", count)
        return count

    # Activity log

    async def list_activity(self, query: ActivityLogQuery) -> list[dict[str, Any]]:
        query.validate()
        rows = [entry for entry in self.activity if entry_matches(entry, query)]
        rows.sort(key=lambda entry: (entry["created_at"], entry["id"]), reverse=query.sort_dir == "desc")
        return [copy.deepcopy(entry) for entry in rows[query.offset : query.offset + query.limit]]

    async def get_activity(self, entry_id: int) -> dict[str, Any]:
        for entry in self.activity:
            if entry["id"] == entry_id:
                return copy.deepcopy(entry)
        raise RepositoryNotFoundError("ACTIVITY_LOG", str(entry_id))

    # Summary

    async def review_summary(self, *, warning_days: int) -> dict[str, Any]:
        now = _now()
        pending_ads = [row for row in self.ads.values() if row["status"] == "PENDING_APPROVAL"]
        active_mous = [row for row in self.mous.values() if is_mou_valid(row, now)]
        return {
            "pending_ads": len(pending_ads),
            "pending_ads_without_mou": sum(
                1 for row in pending_ads if not has_active_mou(self._employer_mous(row["employer_id"]), now)
            ),
            "pending_employers": sum(1 for row in self.employers.values() if row["status"] == "PENDING_APPROVAL"),
            "active_mous": len(active_mous),
            "expiring_mous": sum(1 for row in active_mous if is_mou_expiring(row, now, warning_days=warning_days)),
        }

    # Internals

    def _commit_transition(
        self,
        table: dict[str, dict[str, Any]],
        row: dict[str, Any],
        planned: PlannedTransition,
        *,
        now: datetime,
    ) -> dict[str, Any]:
        updated = {**row, **planned.updates}
        self._append_activity(build_transition_entry(planned, created_at=now))
        table[updated["id"]] = updated
        return updated

    def _commit_mous(self, staged: dict[str, dict[str, Any]], entries: list[dict[str, Any]]) -> None:
        for entry in entries:
            self._append_activity(entry)
        self.mous.update(staged)

    def _stage_supersede(
        self,
        others: list[dict[str, Any]],
        staged: dict[str, dict[str, Any]],
        employer: dict[str, Any],
        actor: Actor,
        now: datetime,
    ) -> list[dict[str, Any]]:
        entries = []
        for other in others:
            if not other["is_active"]:
                continue
            superseded = {**other, "is_active": False, "updated_at": now}
            staged[other["id"]] = superseded
            entries.append(
                self._mou_entry(
                    "MOU_DEACTIVATED", superseded, employer, actor, None, {"reason": "superseded"}, now
                )
            )
        return entries

    def _mou_entry(
        self,
        action_type: str,
        mou: dict[str, Any],
        employer: dict[str, Any],
        actor: Actor,
        notes: str | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> dict[str, Any]:
        return build_entry(
            action_type=action_type,
            entity_type="MOU",
            entity_id=mou["id"],
            entity_name=f"{employer['name']} MOU v{mou['version']}",
            actor=actor,
            notes=notes,
            metadata={"employer_id": employer["id"], **metadata},
            created_at=now,
        )

    def _append_activity(self, entry: dict[str, Any]) -> None:
        self.activity.append({"id": next(self._activity_ids), **entry})

    def _employer_mous(self, employer_id: str) -> list[dict[str, Any]]:
        return [row for row in self.mous.values() if row["employer_id"] == employer_id]

    def _require_actor_employer(self, actor: Actor) -> dict[str, Any]:
        if not actor.employer_id:
            raise RepositoryForbiddenError("actor is not linked to an employer")
        return self._require("EMPLOYER", self.employers, actor.employer_id)

    @staticmethod
    def _require(entity_type: str, table: dict[str, dict[str, Any]], entity_id: str) -> dict[str, Any]:
        row = table.get(entity_id)
        if row is None:
            raise RepositoryNotFoundError(entity_type, entity_id)
        return row

    def _employer_out(self, employer: dict[str, Any], *, now: datetime) -> dict[str, Any]:
        return {**employer, "has_active_mou": has_active_mou(self._employer_mous(employer["id"]), now)}

    def _ad_out(self, ad: dict[str, Any], *, now: datetime) -> dict[str, Any]:
        company = self.companies.get(ad["company_id"]) or {}
        return {
            **copy.deepcopy(ad),
            "company_name": company.get("name"),
            "employer_has_active_mou": has_active_mou(self._employer_mous(ad["employer_id"]), now),
        }

    @staticmethod
    def _mou_out(mou: dict[str, Any], *, now: datetime) -> dict[str, Any]:
        return {**mou, "is_valid": is_mou_valid(mou, now)}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: str | None, field_name: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        raise RepositoryValidationError(field_name, "must be a non-empty string")
    return stripped


def _require_moderator(actor: Actor, action: str) -> None:
    if not actor.is_moderator:
        raise RepositoryForbiddenError(f"only branch admins may {action}")


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in values.items()}

