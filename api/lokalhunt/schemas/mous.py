from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

FeeType = Literal["FIXED", "PERCENTAGE"]


class MouOut(BaseModel):
    id: str
    employer_id: str
    branch_admin_id: str
    fee_type: FeeType
    fee_value: float
    signed_at: datetime
    valid_until: datetime | None = None
    is_active: bool
    is_valid: bool
    version: int
    terms: str | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class MouTermsRequest(BaseModel):
    fee_type: FeeType
    fee_value: float = Field(gt=0)
    signed_at: datetime | None = None
    valid_until: datetime | None = None
    terms: str | None = None
    notes: str | None = None


class MouCreateRequest(MouTermsRequest):
    employer_id: str = Field(min_length=1)
    activate: bool = True


class MouDeactivateRequest(BaseModel):
    notes: str | None = None


class MouMaintenanceOut(BaseModel):
    count: int
