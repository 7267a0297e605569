from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    CANDIDATE = "candidate"
    EMPLOYER = "employer"
    BRANCH_ADMIN = "branch_admin"
    SUPER_ADMIN = "super_admin"


@dataclass(slots=True)
class Principal:
    subject: str
    role: ActorRole
    scopes: set[str]
    actor_id: str | None = None
    employer_id: str | None = None
    assigned_city: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    def has_any_scope(self, candidates: set[str]) -> bool:
        return bool(candidates & self.scopes)

    @property
    def actor(self) -> "Actor":
        if not self.actor_id:
            raise PermissionError("principal has no actor id")
        return Actor(
            actor_id=self.actor_id,
            role=self.role.value,
            employer_id=self.employer_id,
            assigned_city=self.assigned_city,
        )


@dataclass(slots=True, frozen=True)
class Actor:
    """Identity recorded on every status write and activity log entry."""

    actor_id: str
    role: str
    employer_id: str | None = None
    assigned_city: str | None = None

    @property
    def is_moderator(self) -> bool:
        return self.role in {ActorRole.BRANCH_ADMIN.value, ActorRole.SUPER_ADMIN.value}

    @property
    def review_city(self) -> str | None:
        """City a branch admin is limited to; None means unscoped."""
        if self.role != ActorRole.BRANCH_ADMIN.value:
            return None
        return self.assigned_city
