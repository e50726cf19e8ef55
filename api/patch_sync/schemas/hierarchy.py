from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from patch_sync.schemas.scope import ReconcileResultOut
from patch_sync.services.triggers import ChangeOperation, HierarchyRelation


class SupervisionEdgeCreateRequest(BaseModel):
    parent_user_id: str = Field(min_length=1)
    child_user_id: str = Field(min_length=1)
    start_date: date | None = None


class ProvisionalSupervisionEdgeCreateRequest(BaseModel):
    lead_user_id: str = Field(min_length=1)
    pending_user_id: str = Field(min_length=1)
    start_date: date | None = None


class ProvisionalLeadEdgeCreateRequest(BaseModel):
    draft_lead_pending_user_id: str = Field(min_length=1)
    organiser_user_id: str | None = None
    organiser_pending_user_id: str | None = None
    start_date: date | None = None

    @model_validator(mode="after")
    def validate_single_target(self) -> "ProvisionalLeadEdgeCreateRequest":
        if bool(self.organiser_user_id) == bool(self.organiser_pending_user_id):
            raise ValueError("exactly one of organiser_user_id or organiser_pending_user_id must be set")
        return self


class FieldAssignmentCreateRequest(BaseModel):
    organiser_id: str = Field(min_length=1)
    patch_id: str = Field(min_length=1)


class DirectPatchAssignmentsRequest(BaseModel):
    patch_ids: list[str] = Field(default_factory=list, max_length=500)


class HierarchyChangeRequest(BaseModel):
    relation: HierarchyRelation
    operation: ChangeOperation
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_rows(self) -> "HierarchyChangeRequest":
        if self.operation == "insert" and not self.new:
            raise ValueError("insert changes require new")
        if self.operation == "delete" and not self.old:
            raise ValueError("delete changes require old")
        if self.operation == "update" and not (self.old and self.new):
            raise ValueError("update changes require old and new")
        return self


class DispatchOut(BaseModel):
    mode: Literal["queue", "inline"]
    affected_lead_organiser_ids: list[str] = Field(default_factory=list)
    enqueued_job_ids: list[str] = Field(default_factory=list)
    reconciliations: list[ReconcileResultOut] = Field(default_factory=list)


class HierarchyWriteOut(BaseModel):
    row: dict[str, Any]
    dispatch: DispatchOut
