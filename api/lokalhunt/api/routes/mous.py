from fastapi import APIRouter, Depends, HTTPException, Query, status

from lokalhunt.core.security import get_human_principal
from lokalhunt.schemas.mous import (
    MouCreateRequest,
    MouDeactivateRequest,
    MouMaintenanceOut,
    MouOut,
    MouTermsRequest,
)
from lokalhunt.services.errors import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from lokalhunt.services.repository import get_repository

router = APIRouter()


def _require_mou_writer(principal) -> None:
    try:
        principal.require_scopes({"mou:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")


@router.get("", response_model=list[MouOut])
async def list_mous(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    employer_id: str | None = Query(default=None, min_length=1),
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[MouOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_mous(employer_id=employer_id, is_active=is_active, limit=limit, offset=offset)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [MouOut(**row) for row in rows]


@router.post("/deactivate-expired", response_model=MouMaintenanceOut)
async def deactivate_expired_mous(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> MouMaintenanceOut:
    _require_mou_writer(principal)

    try:
        count = await repository.deactivate_expired_mous(actor=principal.actor, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return MouMaintenanceOut(count=count)


@router.get("/{mou_id}", response_model=MouOut)
async def get_mou(
    mou_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> MouOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_mou(mou_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return MouOut(**row)


@router.post("", response_model=MouOut, status_code=status.HTTP_201_CREATED)
async def create_mou(
    payload: MouCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> MouOut:
    _require_mou_writer(principal)

    try:
        row = await repository.create_mou(
            actor=principal.actor,
            employer_id=payload.employer_id,
            fee_type=payload.fee_type,
            fee_value=payload.fee_value,
            signed_at=payload.signed_at,
            valid_until=payload.valid_until,
            terms=payload.terms,
            notes=payload.notes,
            activate=payload.activate,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return MouOut(**row)


@router.put("/{mou_id}", response_model=MouOut)
async def update_mou(
    mou_id: str,
    payload: MouTermsRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> MouOut:
    _require_mou_writer(principal)

    try:
        row = await repository.update_mou(
            mou_id=mou_id,
            actor=principal.actor,
            fee_type=payload.fee_type,
            fee_value=payload.fee_value,
            signed_at=payload.signed_at,
            valid_until=payload.valid_until,
            terms=payload.terms,
            notes=payload.notes,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return MouOut(**row)


@router.patch("/{mou_id}/activate", response_model=MouOut)
async def activate_mou(
    mou_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> MouOut:
    _require_mou_writer(principal)

    try:
        row = await repository.activate_mou(mou_id=mou_id, actor=principal.actor)
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

    return MouOut(**row)


@router.patch("/{mou_id}/deactivate", response_model=MouOut)
async def deactivate_mou(
    mou_id: str,
    payload: MouDeactivateRequest | None = None,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> MouOut:
    _require_mou_writer(principal)

    try:
        row = await repository.deactivate_mou(
            mou_id=mou_id,
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

    return MouOut(**row)
