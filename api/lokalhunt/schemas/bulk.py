from pydantic import BaseModel, Field


class BulkActionRequest(BaseModel):
    ids: list[str] = Field(min_length=1)
    notes: str | None = None


class BulkItemFailureOut(BaseModel):
    id: str
    code: str
    reason: str


class BulkResultOut(BaseModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: list[BulkItemFailureOut] = Field(default_factory=list)
    succeeded_count: int
    failed_count: int
