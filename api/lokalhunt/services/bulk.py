from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

from lokalhunt.core.auth import Actor
from lokalhunt.services.errors import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from lokalhunt.services.workflow import get_ad_transition, get_employer_transition, validate_transition_input

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Per-item failures; anything else (e.g. RepositoryUnavailableError) aborts the whole call.
ITEM_ERRORS = (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


@dataclass(slots=True)
class BulkItemFailure:
    id: str
    code: str
    reason: str


@dataclass(slots=True)
class BulkResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[BulkItemFailure] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [{"id": item.id, "code": item.code, "reason": item.reason} for item in self.failed],
            "succeeded_count": len(self.succeeded),
            "failed_count": len(self.failed),
        }


def normalize_bulk_ids(ids: Sequence[str], *, max_items: int) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in ids:
        value = raw.strip() if isinstance(raw, str) else ""
        if not value or value in seen:
            continue
        seen.add(value)
        normalized.append(value)
    if not normalized:
        raise RepositoryValidationError("ids", "at least one id is required")
    if len(normalized) > max_items:
        raise RepositoryValidationError("ids", f"at most {max_items} ids per bulk call")
    return normalized


async def run_bulk(
    ids: Sequence[str],
    operation: Callable[[str], Awaitable[Any]],
    *,
    name: str,
    max_items: int,
    concurrency: int,
) -> BulkResult:
    item_ids = normalize_bulk_ids(ids, max_items=max_items)
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _apply(item_id: str) -> BulkItemFailure | None:
        async with semaphore:
            try:
                await operation(item_id)
            except ITEM_ERRORS as exc:
                logger.warning("bulk item failed op=%s id=%s code=%s reason=%s", name, item_id, exc.code, exc)
                return BulkItemFailure(id=item_id, code=exc.code, reason=str(exc))
        return None

    with tracer.start_as_current_span(f"bulk.{name}") as span:
        span.set_attribute("bulk.requested", len(item_ids))
        tasks = [asyncio.create_task(_apply(item_id)) for item_id in item_ids]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # Items still running must not commit after the call has failed.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result = BulkResult()
        for item_id, failure in zip(item_ids, outcomes):
            if failure is None:
                result.succeeded.append(item_id)
            else:
                result.failed.append(failure)

        span.set_attribute("bulk.succeeded", len(result.succeeded))
        span.set_attribute("bulk.failed", len(result.failed))

    logger.info(
        "bulk operation op=%s requested=%s succeeded=%s failed=%s",
        name,
        len(item_ids),
        len(result.succeeded),
        len(result.failed),
    )
    return result


async def bulk_transition_ads(
    repository: Any,
    *,
    ids: Sequence[str],
    action: str,
    actor: Actor,
    notes: str | None = None,
    max_items: int,
    concurrency: int,
) -> BulkResult:
    # Missing notes is a structural failure: checked once before any item runs.
    normalized_notes = validate_transition_input(get_ad_transition(action), notes)

    async def _transition(ad_id: str) -> Any:
        return await repository.transition_ad(ad_id=ad_id, action=action, actor=actor, notes=normalized_notes)

    return await run_bulk(ids, _transition, name=f"ads.{action}", max_items=max_items, concurrency=concurrency)


async def bulk_transition_employers(
    repository: Any,
    *,
    ids: Sequence[str],
    action: str,
    actor: Actor,
    notes: str | None = None,
    max_items: int,
    concurrency: int,
) -> BulkResult:
    normalized_notes = validate_transition_input(get_employer_transition(action), notes)

    async def _transition(employer_id: str) -> Any:
        return await repository.transition_employer(
            employer_id=employer_id, action=action, actor=actor, notes=normalized_notes
        )

    return await run_bulk(
        ids, _transition, name=f"employers.{action}", max_items=max_items, concurrency=concurrency
    )
