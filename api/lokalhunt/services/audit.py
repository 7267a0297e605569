"""Append-only activity log: entry construction, query filters and CSV export."""

from __future__ import annotations

import csv
import io
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from lokalhunt.core.auth import Actor
from lokalhunt.services.errors import RepositoryValidationError
from lokalhunt.services.mou import as_utc
from lokalhunt.services.workflow import PlannedTransition

ActivityActionType = Literal[
    "EMPLOYER_APPROVED",
    "EMPLOYER_REJECTED",
    "EMPLOYER_BLOCKED",
    "EMPLOYER_UNBLOCKED",
    "AD_SUBMITTED",
    "AD_APPROVED",
    "AD_REJECTED",
    "AD_ARCHIVED",
    "MOU_CREATED",
    "MOU_UPDATED",
    "MOU_ACTIVATED",
    "MOU_DEACTIVATED",
]
ActivityEntityType = Literal["EMPLOYER", "AD", "MOU"]
SortDir = Literal["asc", "desc"]

ACTIVITY_ACTION_TYPES = {
    "EMPLOYER_APPROVED",
    "EMPLOYER_REJECTED",
    "EMPLOYER_BLOCKED",
    "EMPLOYER_UNBLOCKED",
    "AD_SUBMITTED",
    "AD_APPROVED",
    "AD_REJECTED",
    "AD_ARCHIVED",
    "MOU_CREATED",
    "MOU_UPDATED",
    "MOU_ACTIVATED",
    "MOU_DEACTIVATED",
}
ACTIVITY_ENTITY_TYPES = {"EMPLOYER", "AD", "MOU"}
ACTIVITY_CSV_COLUMNS = (
    "timestamp",
    "action_type",
    "entity_type",
    "entity_id",
    "entity_name",
    "performed_by",
    "notes",
)
_SEARCH_TOKEN_RE = re.compile(r"[^\W_]+")


@dataclass(slots=True)
class ActivityLogQuery:
    action_type: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    performed_by: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    q: str | None = None
    sort_dir: SortDir = "desc"
    limit: int = 50
    offset: int = 0

    def validate(self) -> "ActivityLogQuery":
        if self.action_type is not None and self.action_type not in ACTIVITY_ACTION_TYPES:
            raise RepositoryValidationError("action_type", f"unsupported action type: {self.action_type}")
        if self.entity_type is not None and self.entity_type not in ACTIVITY_ENTITY_TYPES:
            raise RepositoryValidationError("entity_type", f"unsupported entity type: {self.entity_type}")
        self.date_from = as_utc(self.date_from)
        self.date_to = as_utc(self.date_to)
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise RepositoryValidationError("date_from", "must not be after date_to")
        if self.sort_dir not in {"asc", "desc"}:
            raise RepositoryValidationError("sort_dir", "must be asc or desc")
        if self.limit < 1 or self.offset < 0:
            raise RepositoryValidationError("limit", "limit must be positive and offset non-negative")
        if self.q is not None:
            self.q = self.q.strip() or None
        return self

    def search_terms(self) -> list[str]:
        return search_tokens(self.q)


def build_transition_entry(planned: PlannedTransition, *, created_at: datetime) -> dict[str, Any]:
    return build_entry(
        action_type=planned.action_type,
        entity_type=planned.entity_type,
        entity_id=planned.entity_id,
        entity_name=planned.entity_name,
        actor=planned.actor,
        notes=planned.notes,
        metadata=planned.activity_metadata(),
        created_at=created_at,
    )


def build_entry(
    *,
    action_type: str,
    entity_type: str,
    entity_id: str,
    entity_name: str | None,
    actor: Actor,
    notes: str | None,
    metadata: Mapping[str, Any] | None,
    created_at: datetime,
) -> dict[str, Any]:
    if action_type not in ACTIVITY_ACTION_TYPES:
        raise ValueError(f"unknown activity action type: {action_type}")
    if entity_type not in ACTIVITY_ENTITY_TYPES:
        raise ValueError(f"unknown activity entity type: {entity_type}")
    return {
        "action_type": action_type,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "entity_name": entity_name,
        "performed_by": actor.actor_id,
        "performed_by_role": actor.role,
        "notes": notes,
        "metadata": dict(metadata or {}),
        "created_at": created_at,
    }


def entry_matches(entry: Mapping[str, Any], query: ActivityLogQuery) -> bool:
    if query.action_type and entry["action_type"] != query.action_type:
        return False
    if query.entity_type and entry["entity_type"] != query.entity_type:
        return False
    if query.entity_id and entry["entity_id"] != query.entity_id:
        return False
    if query.performed_by and entry["performed_by"] != query.performed_by:
        return False
    created_at = as_utc(entry["created_at"])
    if query.date_from and created_at < query.date_from:
        return False
    if query.date_to and created_at > query.date_to:
        return False
    if query.q:
        terms = query.search_terms()
        # Punctuation-only queries have no terms and match nothing.
        haystack = set(search_tokens(f"{entry.get('entity_name') or ''} {entry.get('notes') or ''}"))
        if not terms or not all(term in haystack for term in terms):
            return False
    return True


def search_tokens(text: str | None) -> list[str]:
    if not text:
        return []
    return _SEARCH_TOKEN_RE.findall(text.casefold())


def render_activity_csv(entries: Iterable[Mapping[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(ACTIVITY_CSV_COLUMNS)
    for entry in entries:
        created_at = entry.get("created_at")
        writer.writerow(
            [
                created_at.isoformat() if isinstance(created_at, datetime) else created_at or "",
                entry.get("action_type") or "",
                entry.get("entity_type") or "",
                entry.get("entity_id") or "",
                entry.get("entity_name") or "",
                entry.get("performed_by") or "",
                entry.get("notes") or "",
            ]
        )
    return buffer.getvalue()
