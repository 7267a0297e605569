from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from lokalhunt.schemas.mous import MouOut

EmployerStatus = Literal["PENDING_APPROVAL", "ACTIVE", "BLOCKED", "REJECTED"]


class EmployerRegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=320)


class EmployerOut(BaseModel):
    id: str
    user_id: str
    name: str
    email: str
    status: EmployerStatus
    status_notes: str | None = None
    has_active_mou: bool = False
    created_at: datetime
    updated_at: datetime


class EmployerDetailOut(EmployerOut):
    mous: list[MouOut] = Field(default_factory=list)


class EmployerActionRequest(BaseModel):
    notes: str | None = None
