from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from lokalhunt.services.errors import RepositoryValidationError
from lokalhunt.services.mou import has_active_mou, is_mou_expiring, is_mou_valid, validate_mou_terms

NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def _mou(*, is_active: bool = True, valid_until: datetime | None = None) -> dict[str, object]:
    return {"is_active": is_active, "valid_until": valid_until}


def test_active_mou_without_end_date_is_valid() -> None:
    assert has_active_mou([_mou()], NOW)


def test_expired_active_mou_blocks_approval() -> None:
    yesterday = NOW - timedelta(days=1)
    mous = [_mou(valid_until=yesterday)]

    assert not is_mou_valid(mous[0], NOW)
    assert not has_active_mou(mous, NOW)


def test_mou_ending_exactly_now_is_no_longer_valid() -> None:
    assert not has_active_mou([_mou(valid_until=NOW)], NOW)


def test_inactive_or_missing_mous_are_not_active() -> None:
    assert not has_active_mou([], NOW)
    assert not has_active_mou([_mou(is_active=False, valid_until=NOW + timedelta(days=30))], NOW)


def test_two_valid_mous_do_not_count_as_one_active_mou() -> None:
    assert not has_active_mou([_mou(), _mou(valid_until=NOW + timedelta(days=10))], NOW)


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive_future = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    assert has_active_mou([_mou(valid_until=naive_future)], NOW)


def test_expiring_window() -> None:
    soon = _mou(valid_until=NOW + timedelta(days=10))
    later = _mou(valid_until=NOW + timedelta(days=90))

    assert is_mou_expiring(soon, NOW, warning_days=30)
    assert not is_mou_expiring(later, NOW, warning_days=30)
    assert not is_mou_expiring(_mou(), NOW, warning_days=30)


def test_terms_default_signed_at_to_now_and_strip_text() -> None:
    terms = validate_mou_terms(
        fee_type="PERCENTAGE",
        fee_value=8.5,
        signed_at=None,
        valid_until=NOW + timedelta(days=365),
        terms="  standard placement terms ",
        notes="   ",
        now=NOW,
    )

    assert terms.signed_at == NOW
    assert terms.terms == "standard placement terms"
    assert terms.notes is None


@pytest.mark.parametrize(
    ("fee_type", "fee_value", "valid_until", "field"),
    [
        ("HOURLY", 10.0, None, "fee_type"),
        ("FIXED", 0.0, None, "fee_value"),
        ("PERCENTAGE", 120.0, None, "fee_value"),
        ("FIXED", 100.0, NOW - timedelta(days=1), "valid_until"),
    ],
)
def test_invalid_terms_are_rejected(fee_type: str, fee_value: float, valid_until: datetime | None, field: str) -> None:
    with pytest.raises(RepositoryValidationError) as exc_info:
        validate_mou_terms(
            fee_type=fee_type,
            fee_value=fee_value,
            signed_at=NOW,
            valid_until=valid_until,
            terms=None,
            notes=None,
            now=NOW,
        )
    assert exc_info.value.field == field
