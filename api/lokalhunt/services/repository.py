from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from lokalhunt.core.auth import Actor
from lokalhunt.core.config import get_settings
from lokalhunt.services.audit import ActivityLogQuery, build_entry, build_transition_entry
from lokalhunt.services.errors import (
    InvalidStateTransitionError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from lokalhunt.services.mou import as_utc, has_active_mou, is_mou_expired, validate_mou_terms
from lokalhunt.services.store import InMemoryRepository
from lokalhunt.services.workflow import (
    PlannedTransition,
    get_ad_transition,
    get_employer_transition,
    log_transition,
    normalize_notes,
    plan_ad_transition,
    plan_employer_transition,
    validate_transition_input,
)

logger = logging.getLogger(__name__)

# Exactly one active, unexpired MOU; mirrors services.mou.has_active_mou.
_ACTIVE_MOU_COUNT_SQL = """
((
  select count(*)
  from mous m
  where m.employer_id = {employer_column}
    and m.is_active = true
    and (m.valid_until is null or m.valid_until > now())
) = 1)
"""

_EMPLOYER_SELECT = f"""
select
  e.id::text as id,
  e.user_id::text as user_id,
  e.name,
  e.email,
  e.status::text as status,
  e.status_notes,
  e.created_at,
  e.updated_at,
  {_ACTIVE_MOU_COUNT_SQL.format(employer_column='e.id')} as has_active_mou
from employers e
"""

_AD_SELECT = f"""
select
  a.id::text as id,
  a.employer_id::text as employer_id,
  a.company_id::text as company_id,
  c.name as company_name,
  a.title,
  a.description,
  a.city,
  a.category_name,
  a.category_fields,
  a.status::text as status,
  a.submitted_at,
  a.approved_at,
  a.approved_by::text as approved_by,
  a.rejected_at,
  a.rejected_by::text as rejected_by,
  a.rejection_reason,
  a.archived_at,
  a.created_at,
  a.updated_at,
  {_ACTIVE_MOU_COUNT_SQL.format(employer_column='a.employer_id')} as employer_has_active_mou
from ads a
join companies c on c.id = a.company_id
"""

_MOU_SELECT = """
select
  m.id::text as id,
  m.employer_id::text as employer_id,
  m.branch_admin_id::text as branch_admin_id,
  m.fee_type::text as fee_type,
  m.fee_value,
  m.signed_at,
  m.valid_until,
  m.is_active,
  m.version,
  m.terms,
  m.notes,
  m.created_at,
  m.updated_at,
  (m.is_active and (m.valid_until is null or m.valid_until > now())) as is_valid
from mous m
"""

_ACTIVITY_SELECT = """
select
  id,
  action_type,
  entity_type,
  entity_id::text as entity_id,
  entity_name,
  performed_by::text as performed_by,
  performed_by_role,
  notes,
  metadata,
  created_at
from activity_logs
"""

# Columns the state machines may write, with their SQL casts.
_AD_UPDATE_COLUMNS = {
    "status": "ad_status",
    "updated_at": "timestamptz",
    "submitted_at": "timestamptz",
    "approved_at": "timestamptz",
    "approved_by": "uuid",
    "rejected_at": "timestamptz",
    "rejected_by": "uuid",
    "rejection_reason": "text",
    "archived_at": "timestamptz",
}
_EMPLOYER_UPDATE_COLUMNS = {
    "status": "employer_status",
    "status_notes": "text",
    "updated_at": "timestamptz",
}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def register_employer(self, *, user_id: str, name: str, email: str) -> dict[str, Any]:
        normalized_name = self._require_text(name, "name")
        normalized_email = self._require_text(email, "email").lower()
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                employer_id = await conn.fetchval(
                    """
                    insert into employers (user_id, name, email)
                    values ($1::uuid, $2, $3)
                    returning id::text
                    """,
                    user_id,
                    normalized_name,
                    normalized_email,
                )
                row = await conn.fetchrow(f"{_EMPLOYER_SELECT} where e.id = $1::uuid", employer_id)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryValidationError("user_id", "employer already registered for this user") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("user_id", "must be a UUID") from exc
        logger.info("employer registered employer_id=%s user_id=%s", employer_id, user_id)
        return self._employer_row_to_dict(row)

    async def get_employer(self, employer_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(f"{_EMPLOYER_SELECT} where e.id = $1::uuid", employer_id)
                if not row:
                    raise RepositoryNotFoundError("EMPLOYER", employer_id)
                mous = await conn.fetch(
                    f"{_MOU_SELECT} where m.employer_id = $1::uuid order by m.version desc",
                    employer_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("EMPLOYER", employer_id) from exc
        result = self._employer_row_to_dict(row)
        result["mous"] = [self._mou_row_to_dict(mou) for mou in mous]
        return result

    async def list_employers(
        self,
        *,
        status: str | None = None,
        has_active_mou: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_EMPLOYER_SELECT}
            where ($3::text is null or e.status::text = $3::text)
              and ($4::boolean is null or {_ACTIVE_MOU_COUNT_SQL.format(employer_column='e.id')} = $4::boolean)
            order by e.updated_at desc
            limit $1
            offset $2
            """,
            limit,
            offset,
            status,
            has_active_mou,
        )
        return [self._employer_row_to_dict(row) for row in rows]

    async def transition_employer(
        self,
        *,
        employer_id: str,
        action: str,
        actor: Actor,
        notes: str | None = None,
    ) -> dict[str, Any]:
        validate_transition_input(get_employer_transition(action), notes)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        """
                        select
                          id::text as id,
                          name,
                          status::text as status
                        from employers
                        where id = $1::uuid
                        for update
                        """,
                        employer_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("EMPLOYER", employer_id)

                    now = datetime.now(timezone.utc)
                    planned = plan_employer_transition(
                        employer=dict(existing), action=action, actor=actor, notes=notes, now=now
                    )
                    await self._apply_updates(conn, "employers", _EMPLOYER_UPDATE_COLUMNS, employer_id, planned)
                    await self._insert_transition_activity(conn, planned, now=now)
                    row = await conn.fetchrow(f"{_EMPLOYER_SELECT} where e.id = $1::uuid", employer_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("EMPLOYER", employer_id) from exc

        log_transition(planned)
        return self._employer_row_to_dict(row)

    async def create_company(self, *, actor: Actor, name: str, city: str | None) -> dict[str, Any]:
        normalized_name = self._require_text(name, "name")
        employer_id = self._require_actor_employer_id(actor)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.fetchval(
                    "select status::text from employers where id = $1::uuid",
                    employer_id,
                )
                if status is None:
                    raise RepositoryNotFoundError("EMPLOYER", employer_id)
                if status in {"REJECTED", "BLOCKED"}:
                    raise RepositoryForbiddenError(f"employer is {status}")
                row = await conn.fetchrow(
                    """
                    insert into companies (employer_id, name, city)
                    values ($1::uuid, $2, $3)
                    returning
                      id::text as id,
                      employer_id::text as employer_id,
                      name,
                      city,
                      created_at,
                      updated_at
                    """,
                    employer_id,
                    normalized_name,
                    (city or "").strip() or None,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("EMPLOYER", employer_id) from exc
        return dict(row)

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
        normalized_title = self._require_text(title, "title")
        employer_id = self._require_actor_employer_id(actor)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.fetchval(
                    "select status::text from employers where id = $1::uuid",
                    employer_id,
                )
                if status is None:
                    raise RepositoryNotFoundError("EMPLOYER", employer_id)
                if status != "ACTIVE":
                    raise RepositoryForbiddenError("only active employers may create ads")
                company_owner = await conn.fetchval(
                    "select employer_id::text from companies where id = $1::uuid",
                    company_id,
                )
                if company_owner is None:
                    raise RepositoryNotFoundError("COMPANY", company_id)
                if company_owner != employer_id:
                    raise RepositoryForbiddenError("company belongs to another employer")

                ad_id = await conn.fetchval(
                    """
                    insert into ads (
                      employer_id,
                      company_id,
                      title,
                      description,
                      city,
                      category_name,
                      category_fields
                    )
                    values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7::jsonb)
                    returning id::text
                    """,
                    employer_id,
                    company_id,
                    normalized_title,
                    description,
                    city,
                    category_name,
                    json.dumps(category_fields),
                )
                row = await conn.fetchrow(f"{_AD_SELECT} where a.id = $1::uuid", ad_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("COMPANY", company_id) from exc
        return self._ad_row_to_dict(row)

    async def get_ad(self, ad_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"{_AD_SELECT} where a.id = $1::uuid", ad_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("AD", ad_id) from exc
        if not row:
            raise RepositoryNotFoundError("AD", ad_id)
        return self._ad_row_to_dict(row)

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
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                {_AD_SELECT}
                where ($3::text is null or a.status::text = $3::text)
                  and ($4::uuid is null or a.employer_id = $4::uuid)
                  and (
                    $5::boolean is null
                    or {_ACTIVE_MOU_COUNT_SQL.format(employer_column='a.employer_id')} = $5::boolean
                  )
                  and ($6::text is null or lower(btrim(a.city)) = lower(btrim($6::text)))
                order by a.updated_at desc
                limit $1
                offset $2
                """,
                limit,
                offset,
                status,
                employer_id,
                has_active_mou,
                city,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("employer_id", "must be a UUID") from exc
        return [self._ad_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        """
                        select
                          id::text as id,
                          employer_id::text as employer_id,
                          title,
                          city,
                          status::text as status
                        from ads
                        where id = $1::uuid
                        for update
                        """,
                        ad_id,
                    )
                    if not existing:
                        raise RepositoryNotFoundError("AD", ad_id)

                    current = as_utc(now) or datetime.now(timezone.utc)
                    mous: list[asyncpg.Record] = []
                    if action == "approve":
                        # Shared row locks keep the MOU from being deactivated until this commits.
                        mous = await conn.fetch(
                            """
                            select is_active, valid_until
                            from mous
                            where employer_id = $1::uuid
                              and is_active = true
                            for share
                            """,
                            existing["employer_id"],
                        )
                    planned = plan_ad_transition(
                        ad=dict(existing),
                        action=action,
                        actor=actor,
                        notes=notes,
                        mou_active=has_active_mou([dict(row) for row in mous], current),
                        now=current,
                    )
                    await self._apply_updates(conn, "ads", _AD_UPDATE_COLUMNS, ad_id, planned)
                    await self._insert_transition_activity(conn, planned, now=current)
                    row = await conn.fetchrow(f"{_AD_SELECT} where a.id = $1::uuid", ad_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("AD", ad_id) from exc

        log_transition(planned)
        return self._ad_row_to_dict(row)

    async def list_mous(
        self,
        *,
        employer_id: str | None = None,
        is_active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                {_MOU_SELECT}
                where ($3::uuid is null or m.employer_id = $3::uuid)
                  and ($4::boolean is null or m.is_active = $4::boolean)
                order by m.created_at desc
                limit $1
                offset $2
                """,
                limit,
                offset,
                employer_id,
                is_active,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("employer_id", "must be a UUID") from exc
        return [self._mou_row_to_dict(row) for row in rows]

    async def get_mou(self, mou_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"{_MOU_SELECT} where m.id = $1::uuid", mou_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("MOU", mou_id) from exc
        if not row:
            raise RepositoryNotFoundError("MOU", mou_id)
        return self._mou_row_to_dict(row)

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
        self._require_moderator(actor, "create MOUs")
        now = datetime.now(timezone.utc)
        mou_terms = validate_mou_terms(
            fee_type=fee_type,
            fee_value=fee_value,
            signed_at=signed_at,
            valid_until=valid_until,
            terms=terms,
            notes=notes,
            now=now,
        )
        if activate and is_mou_expired({"valid_until": mou_terms.valid_until}, now):
            raise RepositoryValidationError("valid_until", "cannot activate an expired MOU")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    employer = await self._lock_employer(conn, employer_id)
                    if employer["status"] == "REJECTED":
                        raise RepositoryValidationError("employer_id", "cannot issue an MOU to a rejected employer")

                    superseded = []
                    if activate:
                        superseded = await self._deactivate_active_mous(conn, employer_id=employer_id, now=now)

                    mou_id = await conn.fetchval(
                        """
                        insert into mous (
                          employer_id,
                          branch_admin_id,
                          fee_type,
                          fee_value,
                          signed_at,
                          valid_until,
                          is_active,
                          version,
                          terms,
                          notes,
                          created_at,
                          updated_at
                        )
                        values (
                          $1::uuid,
                          $2::uuid,
                          $3::mou_fee_type,
                          $4,
                          $5,
                          $6,
                          $7,
                          (select coalesce(max(version), 0) + 1 from mous where employer_id = $1::uuid),
                          $8,
                          $9,
                          $10,
                          $10
                        )
                        returning id::text
                        """,
                        employer_id,
                        actor.actor_id,
                        mou_terms.fee_type,
                        Decimal(str(mou_terms.fee_value)),
                        mou_terms.signed_at,
                        mou_terms.valid_until,
                        activate,
                        mou_terms.terms,
                        mou_terms.notes,
                        now,
                    )
                    row = await conn.fetchrow(f"{_MOU_SELECT} where m.id = $1::uuid", mou_id)
                    created = self._mou_row_to_dict(row)

                    await self._insert_mou_activity(
                        conn,
                        "MOU_CREATED",
                        created,
                        employer,
                        actor,
                        mou_terms.notes,
                        {"version": created["version"]},
                        now,
                    )
                    for previous in superseded:
                        await self._insert_mou_activity(
                            conn, "MOU_DEACTIVATED", previous, employer, actor, None, {"reason": "superseded"}, now
                        )
                    if activate:
                        await self._insert_mou_activity(
                            conn, "MOU_ACTIVATED", created, employer, actor, None, {"version": created["version"]}, now
                        )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("EMPLOYER", employer_id) from exc

        logger.info("mou created mou_id=%s employer_id=%s active=%s", created["id"], employer_id, activate)
        return created

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
        self._require_moderator(actor, "update MOUs")
        now = datetime.now(timezone.utc)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing, employer = await self._lock_mou(conn, mou_id)
                    mou_terms = validate_mou_terms(
                        fee_type=fee_type,
                        fee_value=fee_value,
                        signed_at=signed_at if signed_at is not None else existing["signed_at"],
                        valid_until=valid_until,
                        terms=terms,
                        notes=notes,
                        now=now,
                    )
                    row = await conn.fetchrow(
                        """
                        update mous
                        set
                          fee_type = $2::mou_fee_type,
                          fee_value = $3,
                          signed_at = $4,
                          valid_until = $5,
                          terms = $6,
                          notes = $7,
                          version = (select max(version) + 1 from mous where employer_id = $9::uuid),
                          updated_at = $8
                        where id = $1::uuid
                        returning id::text
                        """,
                        mou_id,
                        mou_terms.fee_type,
                        Decimal(str(mou_terms.fee_value)),
                        mou_terms.signed_at,
                        mou_terms.valid_until,
                        mou_terms.terms,
                        mou_terms.notes,
                        now,
                        existing["employer_id"],
                    )
                    updated = self._mou_row_to_dict(
                        await conn.fetchrow(f"{_MOU_SELECT} where m.id = $1::uuid", row["id"])
                    )
                    tracked = ("fee_type", "fee_value", "signed_at", "valid_until", "version")
                    await self._insert_mou_activity(
                        conn,
                        "MOU_UPDATED",
                        updated,
                        employer,
                        actor,
                        mou_terms.notes,
                        {
                            "before": {key: existing[key] for key in tracked},
                            "after": {key: updated[key] for key in tracked},
                        },
                        now,
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryValidationError("version", "concurrent MOU update") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("MOU", mou_id) from exc
        return updated

    async def activate_mou(self, *, mou_id: str, actor: Actor) -> dict[str, Any]:
        self._require_moderator(actor, "activate MOUs")
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing, employer = await self._lock_mou(conn, mou_id)
                    now = datetime.now(timezone.utc)
                    if existing["is_active"]:
                        raise InvalidStateTransitionError("ACTIVE", "activate")
                    if is_mou_expired(existing, now):
                        raise InvalidStateTransitionError("EXPIRED", "activate")

                    superseded = await self._deactivate_active_mous(conn, employer_id=existing["employer_id"], now=now)
                    await conn.execute(
                        "update mous set is_active = true, updated_at = $2 where id = $1::uuid",
                        mou_id,
                        now,
                    )
                    updated = self._mou_row_to_dict(await conn.fetchrow(f"{_MOU_SELECT} where m.id = $1::uuid", mou_id))
                    for previous in superseded:
                        await self._insert_mou_activity(
                            conn, "MOU_DEACTIVATED", previous, employer, actor, None, {"reason": "superseded"}, now
                        )
                    await self._insert_mou_activity(
                        conn,
                        "MOU_ACTIVATED",
                        updated,
                        employer,
                        actor,
                        None,
                        {"before": {"is_active": False}, "after": {"is_active": True}},
                        now,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("MOU", mou_id) from exc
        return updated

    async def deactivate_mou(self, *, mou_id: str, actor: Actor, notes: str | None = None) -> dict[str, Any]:
        self._require_moderator(actor, "deactivate MOUs")
        normalized_notes = normalize_notes(notes)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing, employer = await self._lock_mou(conn, mou_id)
                    if not existing["is_active"]:
                        raise InvalidStateTransitionError("INACTIVE", "deactivate")
                    now = datetime.now(timezone.utc)
                    await conn.execute(
                        "update mous set is_active = false, updated_at = $2 where id = $1::uuid",
                        mou_id,
                        now,
                    )
                    updated = self._mou_row_to_dict(await conn.fetchrow(f"{_MOU_SELECT} where m.id = $1::uuid", mou_id))
                    await self._insert_mou_activity(
                        conn,
                        "MOU_DEACTIVATED",
                        updated,
                        employer,
                        actor,
                        normalized_notes,
                        {"reason": "manual", "before": {"is_active": True}, "after": {"is_active": False}},
                        now,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("MOU", mou_id) from exc
        return updated

    async def deactivate_expired_mous(self, *, actor: Actor, limit: int = 100) -> int:
        self._require_moderator(actor, "deactivate MOUs")
        pool = await self._get_pool()
        now = datetime.now(timezone.utc)
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    update mous m
                    set is_active = false, updated_at = $1
                    where m.id in (
                      select id
                      from mous
                      where is_active = true
                        and valid_until is not null
                        and valid_until <= $1
                      order by valid_until asc
                      limit $2
                      for update skip locked
                    )
                    returning
                      m.id::text as id,
                      m.employer_id::text as employer_id,
                      m.version,
                      m.valid_until,
                      (select name from employers e where e.id = m.employer_id) as employer_name
                    """,
                    now,
                    limit,
                )
                for row in rows:
                    await self._insert_activity(
                        conn,
                        build_entry(
                            action_type="MOU_DEACTIVATED",
                            entity_type="MOU",
                            entity_id=row["id"],
                            entity_name=f"{row['employer_name']} MOU v{row['version']}",
                            actor=actor,
                            notes=None,
                            metadata={
                                "employer_id": row["employer_id"],
                                "reason": "expired",
                                "valid_until": row["valid_until"].isoformat(),
                            },
                            created_at=now,
                        ),
                    )
        if rows:
            logger.info("deactivated expired mous count=%s", len(rows))
        return len(rows)

    async def list_activity(self, query: ActivityLogQuery) -> list[dict[str, Any]]:
        query.validate()
        # A malformed id or a query with no searchable words matches nothing.
        if not all(_is_uuid(value) for value in (query.entity_id, query.performed_by) if value):
            return []
        if query.q and not query.search_terms():
            return []
        direction = "asc" if query.sort_dir == "asc" else "desc"
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            {_ACTIVITY_SELECT}
            where ($3::text is null or action_type = $3::text)
              and ($4::text is null or entity_type = $4::text)
              and ($5::uuid is null or entity_id = $5::uuid)
              and ($6::uuid is null or performed_by = $6::uuid)
              and ($7::timestamptz is null or created_at >= $7::timestamptz)
              and ($8::timestamptz is null or created_at <= $8::timestamptz)
              and ($9::text is null or search_vector @@ plainto_tsquery('simple', $9::text))
            order by created_at {direction}, id {direction}
            limit $1
            offset $2
            """,
            query.limit,
            query.offset,
            query.action_type,
            query.entity_type,
            query.entity_id,
            query.performed_by,
            query.date_from,
            query.date_to,
            query.q,
        )
        return [self._activity_row_to_dict(row) for row in rows]

    async def get_activity(self, entry_id: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"{_ACTIVITY_SELECT} where id = $1", entry_id)
        if not row:
            raise RepositoryNotFoundError("ACTIVITY_LOG", str(entry_id))
        return self._activity_row_to_dict(row)

    async def review_summary(self, *, warning_days: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select
              (select count(*) from ads where status = 'PENDING_APPROVAL') as pending_ads,
              (
                select count(*)
                from ads a
                where a.status = 'PENDING_APPROVAL'
                  and not {_ACTIVE_MOU_COUNT_SQL.format(employer_column='a.employer_id')}
              ) as pending_ads_without_mou,
              (select count(*) from employers where status = 'PENDING_APPROVAL') as pending_employers,
              (
                select count(*)
                from mous
                where is_active = true
                  and (valid_until is null or valid_until > now())
              ) as active_mous,
              (
                select count(*)
                from mous
                where is_active = true
                  and valid_until > now()
                  and valid_until <= now() + make_interval(days => $1)
              ) as expiring_mous
            """,
            warning_days,
        )
        return {key: int(row[key]) for key in row.keys()}

    async def _lock_employer(self, conn: asyncpg.Connection, employer_id: str) -> dict[str, Any]:
        row = await conn.fetchrow(
            """
            select
              id::text as id,
              name,
              status::text as status
            from employers
            where id = $1::uuid
            for update
            """,
            employer_id,
        )
        if not row:
            raise RepositoryNotFoundError("EMPLOYER", employer_id)
        return dict(row)

    async def _lock_mou(self, conn: asyncpg.Connection, mou_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
        employer_id = await conn.fetchval("select employer_id::text from mous where id = $1::uuid", mou_id)
        if employer_id is None:
            raise RepositoryNotFoundError("MOU", mou_id)
        # Employer row first: every MOU mutation for an employer serializes on it.
        employer = await self._lock_employer(conn, employer_id)
        row = await conn.fetchrow(f"{_MOU_SELECT} where m.id = $1::uuid for update of m", mou_id)
        if not row:
            raise RepositoryNotFoundError("MOU", mou_id)
        return self._mou_row_to_dict(row), employer

    async def _deactivate_active_mous(
        self,
        conn: asyncpg.Connection,
        *,
        employer_id: str,
        now: datetime,
    ) -> list[dict[str, Any]]:
        rows = await conn.fetch(
            """
            update mous
            set is_active = false, updated_at = $2
            where employer_id = $1::uuid
              and is_active = true
            returning id::text as id, version
            """,
            employer_id,
            now,
        )
        return [dict(row) for row in rows]

    async def _apply_updates(
        self,
        conn: asyncpg.Connection,
        table: str,
        allowed_columns: dict[str, str],
        entity_id: str,
        planned: PlannedTransition,
    ) -> None:
        columns = [column for column in planned.updates if column in allowed_columns]
        assignments = ", ".join(
            f"{column} = ${index}::{allowed_columns[column]}" for index, column in enumerate(columns, start=2)
        )
        await conn.execute(
            f"update {table} set {assignments} where id = $1::uuid",
            entity_id,
            *(planned.updates[column] for column in columns),
        )

    async def _insert_transition_activity(
        self,
        conn: asyncpg.Connection,
        planned: PlannedTransition,
        *,
        now: datetime,
    ) -> int:
        return await self._insert_activity(conn, build_transition_entry(planned, created_at=now))

    async def _insert_mou_activity(
        self,
        conn: asyncpg.Connection,
        action_type: str,
        mou: dict[str, Any],
        employer: dict[str, Any],
        actor: Actor,
        notes: str | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> int:
        entry = build_entry(
            action_type=action_type,
            entity_type="MOU",
            entity_id=mou["id"],
            entity_name=f"{employer['name']} MOU v{mou['version']}",
            actor=actor,
            notes=notes,
            metadata={"employer_id": employer["id"], **metadata},
            created_at=now,
        )
        return await self._insert_activity(conn, entry)

    async def _insert_activity(self, conn: asyncpg.Connection, entry: dict[str, Any]) -> int:
        try:
            return await conn.fetchval(
                """
                insert into activity_logs (
                  action_type,
                  entity_type,
                  entity_id,
                  entity_name,
                  performed_by,
                  performed_by_role,
                  notes,
                  metadata,
                  created_at
                )
                values ($1, $2, $3::uuid, $4, $5::uuid, $6, $7, $8::jsonb, $9)
                returning id
                """,
                entry["action_type"],
                entry["entity_type"],
                entry["entity_id"],
                entry["entity_name"],
                entry["performed_by"],
                entry["performed_by_role"],
                entry["notes"],
                json.dumps(entry["metadata"], default=str),
                entry["created_at"],
            )
        except Exception:
            # The enclosing transaction rolls the status write back with it.
            logger.error(
                "activity log write failed action=%s entity=%s id=%s",
                entry["action_type"],
                entry["entity_type"],
                entry["entity_id"],
            )
            raise

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LH_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _require_text(value: str | None, field_name: str) -> str:
        stripped = (value or "").strip()
        if not stripped:
            raise RepositoryValidationError(field_name, "must be a non-empty string")
        return stripped

    @staticmethod
    def _require_actor_employer_id(actor: Actor) -> str:
        if not actor.employer_id:
            raise RepositoryForbiddenError("actor is not linked to an employer")
        return actor.employer_id

    @staticmethod
    def _require_moderator(actor: Actor, action: str) -> None:
        if not actor.is_moderator:
            raise RepositoryForbiddenError(f"only branch admins may {action}")

    @staticmethod
    def _employer_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return dict(row)

    @staticmethod
    def _ad_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        result = dict(row)
        category_fields = result.get("category_fields")
        if isinstance(category_fields, str):
            try:
                category_fields = json.loads(category_fields)
            except json.JSONDecodeError:
                category_fields = {}
        result["category_fields"] = category_fields if isinstance(category_fields, dict) else {}
        return result

    @staticmethod
    def _mou_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        result = dict(row)
        result["fee_value"] = float(result["fee_value"])
        return result

    @staticmethod
    def _activity_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        result = dict(row)
        metadata = result.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                metadata = {}
        result["metadata"] = metadata if isinstance(metadata, dict) else {}
        return result


def _is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except ValueError:
        return False
    return True


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


__all__ = [
    "InMemoryRepository",
    "PostgresRepository",
    "RepositoryError",
    "get_repository",
]
