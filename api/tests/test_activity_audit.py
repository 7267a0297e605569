from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from lokalhunt.core.auth import Actor
from lokalhunt.services.audit import (
    ACTIVITY_CSV_COLUMNS,
    ActivityLogQuery,
    build_entry,
    entry_matches,
    render_activity_csv,
    search_tokens,
)
from lokalhunt.services.errors import RepositoryValidationError

NOW = datetime(2026, 5, 4, 8, 0, tzinfo=timezone.utc)
ADMIN = Actor(actor_id="admin-1", role="branch_admin")


def _entry(**overrides: object) -> dict[str, object]:
    entry = build_entry(
        action_type="AD_REJECTED",
        entity_type="AD",
        entity_id="ad-1",
        entity_name="Senior Welder",
        actor=ADMIN,
        notes="Salary range missing",
        metadata={"before": {"status": "PENDING_APPROVAL"}, "after": {"status": "REJECTED"}},
        created_at=NOW,
    )
    entry.update(overrides)
    return entry


def test_entry_records_actor_and_role() -> None:
    entry = _entry()
    assert entry["performed_by"] == "admin-1"
    assert entry["performed_by_role"] == "branch_admin"


def test_unknown_action_type_cannot_be_logged() -> None:
    with pytest.raises(ValueError):
        build_entry(
            action_type="AD_DELETED",
            entity_type="AD",
            entity_id="ad-1",
            entity_name=None,
            actor=ADMIN,
            notes=None,
            metadata=None,
            created_at=NOW,
        )


def test_filters_match_by_type_actor_and_date_range() -> None:
    entry = _entry()

    assert entry_matches(entry, ActivityLogQuery(action_type="AD_REJECTED").validate())
    assert not entry_matches(entry, ActivityLogQuery(action_type="AD_APPROVED").validate())
    assert entry_matches(entry, ActivityLogQuery(performed_by="admin-1", entity_type="AD").validate())
    assert not entry_matches(entry, ActivityLogQuery(entity_id="ad-2").validate())
    assert entry_matches(
        entry,
        ActivityLogQuery(date_from=NOW - timedelta(hours=1), date_to=NOW + timedelta(hours=1)).validate(),
    )
    assert not entry_matches(entry, ActivityLogQuery(date_from=NOW + timedelta(seconds=1)).validate())


def test_search_matches_all_words_in_name_or_notes() -> None:
    entry = _entry()

    assert entry_matches(entry, ActivityLogQuery(q="welder salary").validate())
    assert entry_matches(entry, ActivityLogQuery(q="  SENIOR ").validate())
    assert not entry_matches(entry, ActivityLogQuery(q="welder plumber").validate())


def test_search_is_unicode_aware_and_wordless_queries_match_nothing() -> None:
    entry = _entry()

    assert not entry_matches(entry, ActivityLogQuery(q="नौकरी").validate())
    assert not entry_matches(entry, ActivityLogQuery(q="?! --").validate())

    cafe = {**entry, "entity_name": "Café Müller", "notes": None}
    assert entry_matches(cafe, ActivityLogQuery(q="MÜLLER café").validate())
    assert search_tokens("snake_case words") == ["snake", "case", "words"]


@pytest.mark.parametrize(
    "query",
    [
        ActivityLogQuery(action_type="SOMETHING"),
        ActivityLogQuery(entity_type="COMPANY"),
        ActivityLogQuery(date_from=NOW, date_to=NOW - timedelta(days=1)),
        ActivityLogQuery(limit=0),
    ],
)
def test_invalid_queries_are_rejected(query: ActivityLogQuery) -> None:
    with pytest.raises(RepositoryValidationError):
        query.validate()


def test_csv_export_has_fixed_header_and_escapes_values() -> None:
    rows = [
        {"id": 2, **_entry(notes='Says "urgent", call back')},
        {"id": 1, **_entry(action_type="AD_SUBMITTED", notes=None)},
    ]

    output = render_activity_csv(rows)
    parsed = list(csv.reader(io.StringIO(output)))

    assert tuple(parsed[0]) == ACTIVITY_CSV_COLUMNS
    assert parsed[1] == [
        NOW.isoformat(),
        "AD_REJECTED",
        "AD",
        "ad-1",
        "Senior Welder",
        "admin-1",
        'Says "urgent", call back',
    ]
    assert parsed[2][1] == "AD_SUBMITTED"
    assert parsed[2][6] == ""


def test_csv_export_of_no_rows_is_header_only() -> None:
    assert render_activity_csv([]) == ",".join(ACTIVITY_CSV_COLUMNS) + "\n"
