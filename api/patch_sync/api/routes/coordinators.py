from fastapi import APIRouter, Depends, HTTPException, Query, status

from patch_sync.core.auth import ADMIN_WRITE, SCOPE_READ
from patch_sync.core.security import get_human_principal
from patch_sync.schemas.scope import PatchAssignmentOut, PatchSourceOut, ReconcileResultOut, ScopeOut
from patch_sync.services.repository import (
    ReconciliationPersistenceError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.get("/{coordinator_id}/scope", response_model=ScopeOut)
async def get_scope(
    coordinator_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ScopeOut:
    try:
        principal.require_scopes({SCOPE_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        scope = await repository.compute_scope(coordinator_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ScopeOut(
        coordinator_id=scope.coordinator_id,
        coordinator_kind=scope.coordinator_kind,
        patch_ids=sorted(scope.patch_ids),
        sources=[
            PatchSourceOut(patch_id=source.patch_id, source=source.source, via_id=source.via_id)
            for source in scope.sources
        ],
    )


@router.get("/{coordinator_id}/patch-assignments", response_model=list[PatchAssignmentOut])
async def list_patch_assignments(
    coordinator_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    include_history: bool = Query(default=False),
) -> list[PatchAssignmentOut]:
    try:
        principal.require_scopes({SCOPE_READ})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_patch_assignments(coordinator_id, include_history=include_history)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [PatchAssignmentOut(**row) for row in rows]


@router.post("/{coordinator_id}/reconcile", response_model=ReconcileResultOut)
async def reconcile_coordinator(
    coordinator_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ReconcileResultOut:
    try:
        principal.require_scopes({ADMIN_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        result = await repository.reconcile(
            coordinator_id,
            actor_type="human",
            actor_id=principal.actor_id,
            reason="manual",
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except ReconciliationPersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ReconcileResultOut(**result)
