from fastapi import APIRouter, Depends, HTTPException, status

from patch_sync.core.auth import ADMIN_WRITE, HIERARCHY_WRITE, Principal
from patch_sync.core.security import get_human_principal, get_machine_principal
from patch_sync.schemas.hierarchy import (
    DirectPatchAssignmentsRequest,
    DispatchOut,
    FieldAssignmentCreateRequest,
    HierarchyChangeRequest,
    HierarchyWriteOut,
    ProvisionalLeadEdgeCreateRequest,
    ProvisionalSupervisionEdgeCreateRequest,
    SupervisionEdgeCreateRequest,
)
from patch_sync.services.repository import (
    ReconciliationPersistenceError,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from patch_sync.services.triggers import HierarchyChange

router = APIRouter()


def _require_admin_actor(principal: Principal) -> str:
    try:
        principal.require_scopes({ADMIN_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")
    return principal.actor_id


def _http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc))
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (RepositoryConflictError, ReconciliationPersistenceError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


@router.post("/supervision-edges", response_model=HierarchyWriteOut, status_code=status.HTTP_201_CREATED)
async def create_supervision_edge(
    payload: SupervisionEdgeCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.create_supervision_edge(
            parent_user_id=payload.parent_user_id,
            child_user_id=payload.child_user_id,
            start_date=payload.start_date,
            actor_user_id=actor_user_id,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/supervision-edges/{edge_id}/end", response_model=HierarchyWriteOut)
async def end_supervision_edge(
    edge_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.end_supervision_edge(edge_id=edge_id, actor_user_id=actor_user_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/provisional-supervision-edges", response_model=HierarchyWriteOut, status_code=status.HTTP_201_CREATED)
async def create_provisional_supervision_edge(
    payload: ProvisionalSupervisionEdgeCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.create_provisional_supervision_edge(
            lead_user_id=payload.lead_user_id,
            pending_user_id=payload.pending_user_id,
            start_date=payload.start_date,
            actor_user_id=actor_user_id,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/provisional-supervision-edges/{edge_id}/end", response_model=HierarchyWriteOut)
async def end_provisional_supervision_edge(
    edge_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.end_provisional_supervision_edge(edge_id=edge_id, actor_user_id=actor_user_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/provisional-lead-edges", response_model=HierarchyWriteOut, status_code=status.HTTP_201_CREATED)
async def create_provisional_lead_edge(
    payload: ProvisionalLeadEdgeCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.create_provisional_lead_edge(
            draft_lead_pending_user_id=payload.draft_lead_pending_user_id,
            organiser_user_id=payload.organiser_user_id,
            organiser_pending_user_id=payload.organiser_pending_user_id,
            start_date=payload.start_date,
            actor_user_id=actor_user_id,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/provisional-lead-edges/{edge_id}/end", response_model=HierarchyWriteOut)
async def end_provisional_lead_edge(
    edge_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.end_provisional_lead_edge(edge_id=edge_id, actor_user_id=actor_user_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/field-assignments", response_model=HierarchyWriteOut, status_code=status.HTTP_201_CREATED)
async def start_field_assignment(
    payload: FieldAssignmentCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.start_field_assignment(
            organiser_id=payload.organiser_id,
            patch_id=payload.patch_id,
            actor_user_id=actor_user_id,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/field-assignments/{assignment_id}/end", response_model=HierarchyWriteOut)
async def end_field_assignment(
    assignment_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.end_field_assignment(assignment_id=assignment_id, actor_user_id=actor_user_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.put("/pending-users/{pending_user_id}/patches", response_model=HierarchyWriteOut)
async def set_direct_patch_assignments(
    pending_user_id: str,
    payload: DirectPatchAssignmentsRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> HierarchyWriteOut:
    actor_user_id = _require_admin_actor(principal)
    try:
        written = await repository.set_direct_patch_assignments(
            pending_user_id=pending_user_id,
            patch_ids=payload.patch_ids,
            actor_user_id=actor_user_id,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return HierarchyWriteOut(**written)


@router.post("/changes", response_model=DispatchOut, status_code=status.HTTP_202_ACCEPTED)
async def announce_hierarchy_change(
    payload: HierarchyChangeRequest,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> DispatchOut:
    try:
        principal.require_scopes({HIERARCHY_WRITE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    change = HierarchyChange(
        relation=payload.relation,
        operation=payload.operation,
        old=payload.old,
        new=payload.new,
    )
    try:
        dispatch = await repository.record_external_change(change=change, actor_module_db_id=principal.actor_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return DispatchOut(**dispatch)
