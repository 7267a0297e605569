from __future__ import annotations


class RepositoryError(Exception):
    """Base repository error."""

    code = "repository_error"


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""

    code = "unavailable"


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""

    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""

    code = "conflict"


class InvalidStateTransitionError(RepositoryConflictError):
    """Raised when a transition is not valid from the entity's current status."""

    code = "invalid_state_transition"

    def __init__(self, current_state: str, attempted_transition: str) -> None:
        self.current_state = current_state
        self.attempted_transition = attempted_transition
        super().__init__(f"cannot {attempted_transition} from status {current_state}")


class MouRequiredError(RepositoryConflictError):
    """Raised when ad approval is blocked by a missing or expired MOU."""

    code = "mou_required"

    def __init__(self, employer_id: str) -> None:
        self.employer_id = employer_id
        super().__init__(f"employer {employer_id} has no active MOU")


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""

    code = "forbidden"


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""

    code = "validation_error"

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")
