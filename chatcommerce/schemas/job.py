from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class DispatchRequest(BaseModel):
    hook: str
    args: dict[str, Any] = Field(default_factory=dict)
    run_at: Optional[datetime] = None
    max_retries: Optional[int] = Field(default=None, ge=1, le=10)
    caller: str = "admin"

    @field_validator("caller")
    @classmethod
    def validate_caller(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"admin", "automated"}:
            raise ValueError("caller must be 'admin' or 'automated'")
        return value


class BatchDispatchRequest(BaseModel):
    hook: str
    items: list[Any]
    batch_size: int = Field(default=50, ge=1, le=1000)
    args: dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    id: str
    hook: str
    args: dict[str, Any]
    caller: str
    status: str
    retry_count: int
    max_retries: int
    scheduled_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[Any] = None


class DispatchResponse(BaseModel):
    job_ids: list[str]


class JobCountsResponse(BaseModel):
    counts: dict[str, int]
