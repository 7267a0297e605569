from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

AdStatus = Literal["DRAFT", "PENDING_APPROVAL", "APPROVED", "REJECTED", "ARCHIVED"]
EmploymentType = Literal["FULL_TIME", "PART_TIME", "CONTRACT", "INTERNSHIP", "TEMPORARY"]
ExperienceLevel = Literal["ENTRY", "MID", "SENIOR", "LEAD"]


class CategorySpecificFields(BaseModel):
    """Typed attributes an ad carries for its category; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    salary_min: int | None = Field(default=None, ge=0)
    salary_max: int | None = Field(default=None, ge=0)
    skills: list[str] = Field(default_factory=list, max_length=50)
    employment_type: EmploymentType | None = None
    experience_level: ExperienceLevel | None = None
    openings: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def check_salary_range(self) -> "CategorySpecificFields":
        if self.salary_min is not None and self.salary_max is not None and self.salary_min > self.salary_max:
            raise ValueError("salary_min must not exceed salary_max")
        self.skills = [skill.strip() for skill in self.skills if skill.strip()]
        return self


class CompanyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    city: str | None = Field(default=None, max_length=120)


class CompanyOut(BaseModel):
    id: str
    employer_id: str
    name: str
    city: str | None = None
    created_at: datetime
    updated_at: datetime


class AdCreateRequest(BaseModel):
    company_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    city: str | None = Field(default=None, max_length=120)
    category_name: str | None = Field(default=None, max_length=120)
    category_fields: CategorySpecificFields = Field(default_factory=CategorySpecificFields)


class AdOut(BaseModel):
    id: str
    employer_id: str
    company_id: str
    company_name: str | None = None
    title: str
    description: str | None = None
    city: str | None = None
    category_name: str | None = None
    category_fields: CategorySpecificFields = Field(default_factory=CategorySpecificFields)
    status: AdStatus
    employer_has_active_mou: bool = False
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    approved_by: str | None = None
    rejected_at: datetime | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class AdActionRequest(BaseModel):
    notes: str | None = None
