from fastapi import APIRouter, Depends, HTTPException, Query, status

from patch_sync.core.auth import ADMIN_WRITE
from patch_sync.core.security import get_human_principal
from patch_sync.schemas.admin import AdminJobOut, AdminJobsMaintenanceOut, JobStatus
from patch_sync.schemas.scope import EnqueueAllOut, ReconcileAllOut
from patch_sync.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("/reconcile-all", response_model=ReconcileAllOut)
async def reconcile_all(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    close_orphaned: bool = Query(default=False),
) -> ReconcileAllOut:
    try:
        principal.require_scopes({ADMIN_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        summary = await repository.reconcile_all(actor_user_id=principal.actor_id, close_orphaned=close_orphaned)
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ReconcileAllOut(**summary)


@router.post("/reconcile-all/enqueue", response_model=EnqueueAllOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_all_reconciliations(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EnqueueAllOut:
    try:
        principal.require_scopes({ADMIN_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        enqueued = await repository.enqueue_all_reconciliations(actor_user_id=principal.actor_id)
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EnqueueAllOut(**enqueued)


@router.get("/jobs", response_model=list[AdminJobOut])
async def list_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    lead_organiser_id: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[AdminJobOut]:
    try:
        principal.require_scopes({ADMIN_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_admin_jobs(
            status=job_status,
            lead_organiser_id=lead_organiser_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [AdminJobOut(**row) for row in rows]


@router.post("/jobs/reap-expired", response_model=AdminJobsMaintenanceOut)
async def reap_expired_jobs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> AdminJobsMaintenanceOut:
    try:
        principal.require_scopes({ADMIN_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        requeued = await repository.admin_requeue_expired_claimed_jobs(actor_user_id=principal.actor_id, limit=limit)
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return AdminJobsMaintenanceOut(count=requeued)
