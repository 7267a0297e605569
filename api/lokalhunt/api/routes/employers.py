from fastapi import APIRouter, Depends, HTTPException, Query, status

from lokalhunt.core.config import Settings, get_settings
from lokalhunt.core.security import get_human_principal
from lokalhunt.schemas.bulk import BulkActionRequest, BulkResultOut
from lokalhunt.schemas.employers import (
    EmployerActionRequest,
    EmployerDetailOut,
    EmployerOut,
    EmployerRegisterRequest,
    EmployerStatus,
)
from lokalhunt.services.bulk import bulk_transition_employers
from lokalhunt.services.errors import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from lokalhunt.services.repository import get_repository

router = APIRouter()


@router.post("", response_model=EmployerOut, status_code=status.HTTP_201_CREATED)
async def register_employer(
    payload: EmployerRegisterRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EmployerOut:
    try:
        principal.require_scopes({"employer:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.register_employer(
            user_id=principal.actor_id,
            name=payload.name,
            email=payload.email,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EmployerOut(**row)


@router.get("", response_model=list[EmployerOut])
async def list_employers(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    employer_status: EmployerStatus | None = Query(default=None, alias="status"),
    has_active_mou: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[EmployerOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_employers(
            status=employer_status,
            has_active_mou=has_active_mou,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [EmployerOut(**row) for row in rows]


@router.post("/bulk-approve", response_model=BulkResultOut)
async def bulk_approve_employers(
    payload: BulkActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> BulkResultOut:
    return await _run_bulk(payload, "approve", principal, repository, settings)


@router.post("/bulk-reject", response_model=BulkResultOut)
async def bulk_reject_employers(
    payload: BulkActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> BulkResultOut:
    return await _run_bulk(payload, "reject", principal, repository, settings)


@router.get("/{employer_id}", response_model=EmployerDetailOut)
async def get_employer(
    employer_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EmployerDetailOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_employer(employer_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return EmployerDetailOut(**row)


@router.post("/{employer_id}/approve", response_model=EmployerOut)
async def approve_employer(
    employer_id: str,
    payload: EmployerActionRequest | None = None,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EmployerOut:
    return await _transition(employer_id, "approve", payload, principal, repository)


@router.post("/{employer_id}/reject", response_model=EmployerOut)
async def reject_employer(
    employer_id: str,
    payload: EmployerActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EmployerOut:
    return await _transition(employer_id, "reject", payload, principal, repository)


@router.post("/{employer_id}/block", response_model=EmployerOut)
async def block_employer(
    employer_id: str,
    payload: EmployerActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EmployerOut:
    return await _transition(employer_id, "block", payload, principal, repository)


@router.post("/{employer_id}/unblock", response_model=EmployerOut)
async def unblock_employer(
    employer_id: str,
    payload: EmployerActionRequest | None = None,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> EmployerOut:
    return await _transition(employer_id, "unblock", payload, principal, repository)


async def _transition(employer_id, action, payload, principal, repository) -> EmployerOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.transition_employer(
            employer_id=employer_id,
            action=action,
            actor=principal.actor,
            notes=payload.notes if payload else None,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": exc.code, "message": str(exc)},
        ) from exc

    return EmployerOut(**row)


async def _run_bulk(payload, action, principal, repository, settings: Settings) -> BulkResultOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        result = await bulk_transition_employers(
            repository,
            ids=payload.ids,
            action=action,
            actor=principal.actor,
            notes=payload.notes,
            max_items=settings.bulk_max_items,
            concurrency=settings.bulk_concurrency,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return BulkResultOut(**result.as_dict())
