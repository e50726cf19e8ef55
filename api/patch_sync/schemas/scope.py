from datetime import datetime

from pydantic import BaseModel, Field

from patch_sync.services.scope import CoordinatorKind, PatchSourceKind


class PatchSourceOut(BaseModel):
    patch_id: str
    source: PatchSourceKind
    via_id: str


class ScopeOut(BaseModel):
    coordinator_id: str
    coordinator_kind: CoordinatorKind
    patch_ids: list[str] = Field(default_factory=list)
    sources: list[PatchSourceOut] = Field(default_factory=list)


class PatchAssignmentOut(BaseModel):
    id: str
    lead_organiser_id: str
    patch_id: str
    patch_name: str | None = None
    effective_from: datetime
    effective_to: datetime | None = None


class ReconcileResultOut(BaseModel):
    lead_organiser_id: str
    coordinator_kind: CoordinatorKind
    computed_patches: int
    existing_patches: int
    patches_added: int
    patches_removed: int
    final_patch_count: int
    added_patch_ids: list[str] = Field(default_factory=list)
    removed_patch_ids: list[str] = Field(default_factory=list)
    skipped_reason: str | None = None


class ReconcileFailureOut(BaseModel):
    lead_organiser_id: str
    error: str


class ReconcileAllOut(BaseModel):
    coordinators_processed: int
    total_added: int
    total_removed: int
    orphaned_closed: int = 0
    failures: list[ReconcileFailureOut] = Field(default_factory=list)
    results: list[ReconcileResultOut] = Field(default_factory=list)


class EnqueueAllOut(BaseModel):
    coordinators_enqueued: int
    job_ids: list[str] = Field(default_factory=list)
