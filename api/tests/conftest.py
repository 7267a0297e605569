from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

os.environ.setdefault("LH_OTEL_ENABLED", "false")
os.environ.setdefault("LH_STORAGE_BACKEND", "memory")

from lokalhunt.core.auth import Actor  # noqa: E402
from lokalhunt.services.store import InMemoryRepository  # noqa: E402

MODERATOR = Actor(actor_id="00000000-0000-0000-0000-00000000a001", role="branch_admin")


class Seeder:
    """Builds employers, companies and ads through the repository's public operations."""

    def __init__(self, repository: InMemoryRepository) -> None:
        self.repository = repository
        self._users = 0

    def employer(self, *, name: str = "Acme Hiring", status: str = "ACTIVE", mou: bool = True) -> dict[str, Any]:
        self._users += 1
        user_id = f"00000000-0000-0000-0000-{self._users:012d}"
        employer = asyncio.run(
            self.repository.register_employer(user_id=user_id, name=name, email=f"hr{self._users}@example.com")
        )
        if status != "PENDING_APPROVAL":
            action = {"ACTIVE": "approve", "REJECTED": "reject", "BLOCKED": "approve"}[status]
            notes = "not eligible" if action == "reject" else None
            employer = asyncio.run(
                self.repository.transition_employer(
                    employer_id=employer["id"], action=action, actor=MODERATOR, notes=notes
                )
            )
            if status == "BLOCKED":
                employer = asyncio.run(
                    self.repository.transition_employer(
                        employer_id=employer["id"], action="block", actor=MODERATOR, notes="policy violation"
                    )
                )
        if mou:
            asyncio.run(
                self.repository.create_mou(
                    actor=MODERATOR,
                    employer_id=employer["id"],
                    fee_type="FIXED",
                    fee_value=250.0,
                    valid_until=datetime.now(timezone.utc) + timedelta(days=365),
                )
            )
        return employer

    def employer_actor(self, employer: dict[str, Any]) -> Actor:
        return Actor(actor_id=employer["user_id"], role="employer", employer_id=employer["id"])

    def ad(
        self,
        employer: dict[str, Any],
        *,
        title: str = "Warehouse Associate",
        city: str = "Pune",
        submit: bool = True,
    ) -> dict[str, Any]:
        actor = self.employer_actor(employer)
        company = asyncio.run(self.repository.create_company(actor=actor, name=f"{employer['name']} Ltd", city=city))
        ad = asyncio.run(
            self.repository.create_ad(
                actor=actor,
                company_id=company["id"],
                title=title,
                description="Day shift, forklift experience preferred",
                city=city,
                category_name="Logistics",
                category_fields={"salary_min": 18000, "salary_max": 24000, "skills": ["forklift"]},
            )
        )
        if submit:
            ad = asyncio.run(self.repository.transition_ad(ad_id=ad["id"], action="submit", actor=actor))
        return ad


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def seed(repository: InMemoryRepository) -> Seeder:
    return Seeder(repository)


@pytest.fixture
def moderator() -> Actor:
    return MODERATOR
