from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobResultStatus = Literal["done", "failed", "dead_letter"]


class JobOut(BaseModel):
    id: str
    kind: str
    target_type: str
    target_id: str | None = None
    inputs_json: dict[str, Any] = Field(default_factory=dict)
    status: str
    lease_expires_at: datetime | None = None


class ClaimRequest(BaseModel):
    lease_seconds: int = Field(default=120, ge=5, le=3600)


class ResultRequest(BaseModel):
    result_json: dict[str, Any] | None = None
    error_json: dict[str, Any] | None = None
    status: JobResultStatus


class ReapExpiredOut(BaseModel):
    requeued: int
