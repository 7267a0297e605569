from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from lokalhunt.services.errors import RepositoryValidationError

FeeType = Literal["FIXED", "PERCENTAGE"]
FEE_TYPES = {"FIXED", "PERCENTAGE"}
MAX_PERCENTAGE_FEE = 100.0


@dataclass(slots=True, frozen=True)
class MouTerms:
    fee_type: str
    fee_value: float
    signed_at: datetime
    valid_until: datetime | None
    terms: str | None
    notes: str | None


def is_mou_valid(mou: Mapping[str, Any], now: datetime) -> bool:
    if not mou.get("is_active"):
        return False
    valid_until = as_utc(mou.get("valid_until"))
    return valid_until is None or valid_until > as_utc(now)


def has_active_mou(mous: Iterable[Mapping[str, Any]], now: datetime) -> bool:
    """True iff exactly one of the employer's MOUs is active and inside its validity window."""
    return sum(1 for mou in mous if is_mou_valid(mou, now)) == 1


def is_mou_expired(mou: Mapping[str, Any], now: datetime) -> bool:
    valid_until = as_utc(mou.get("valid_until"))
    return valid_until is not None and valid_until <= as_utc(now)


def is_mou_expiring(mou: Mapping[str, Any], now: datetime, *, warning_days: int) -> bool:
    if not is_mou_valid(mou, now):
        return False
    valid_until = as_utc(mou.get("valid_until"))
    return valid_until is not None and valid_until <= as_utc(now) + timedelta(days=warning_days)


def validate_mou_terms(
    *,
    fee_type: str,
    fee_value: float,
    signed_at: datetime | None,
    valid_until: datetime | None,
    terms: str | None,
    notes: str | None,
    now: datetime,
) -> MouTerms:
    if fee_type not in FEE_TYPES:
        raise RepositoryValidationError("fee_type", "must be FIXED or PERCENTAGE")
    if fee_value is None or fee_value <= 0:
        raise RepositoryValidationError("fee_value", "must be greater than 0")
    if fee_type == "PERCENTAGE" and fee_value > MAX_PERCENTAGE_FEE:
        raise RepositoryValidationError("fee_value", "percentage cannot exceed 100")

    normalized_signed_at = as_utc(signed_at) or as_utc(now)
    normalized_valid_until = as_utc(valid_until)
    if normalized_valid_until is not None and normalized_valid_until <= normalized_signed_at:
        raise RepositoryValidationError("valid_until", "must be after signed_at")

    return MouTerms(
        fee_type=fee_type,
        fee_value=float(fee_value),
        signed_at=normalized_signed_at,
        valid_until=normalized_valid_until,
        terms=_strip_or_none(terms),
        notes=_strip_or_none(notes),
    )


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
