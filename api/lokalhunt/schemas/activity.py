from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from lokalhunt.services.audit import ActivityActionType, ActivityEntityType


class ActivityLogOut(BaseModel):
    id: int
    action_type: ActivityActionType
    entity_type: ActivityEntityType
    entity_id: str
    entity_name: str | None = None
    performed_by: str
    performed_by_role: str
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
