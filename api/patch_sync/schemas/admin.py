from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

JobStatus = Literal["queued", "claimed", "done", "failed", "dead_letter"]


class AdminJobOut(BaseModel):
    id: str
    lead_organiser_id: str
    reason: str
    status: JobStatus
    attempt: int
    locked_by_module_id: str | None = None
    lease_expires_at: datetime | None = None
    next_run_at: datetime
    result_json: dict[str, Any] | None = None
    error_json: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class AdminJobsMaintenanceOut(BaseModel):
    count: int
