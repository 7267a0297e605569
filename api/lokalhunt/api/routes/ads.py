from fastapi import APIRouter, Depends, HTTPException, Query, status

from lokalhunt.core.config import Settings, get_settings
from lokalhunt.core.security import get_human_principal
from lokalhunt.schemas.ads import AdActionRequest, AdCreateRequest, AdOut, AdStatus
from lokalhunt.schemas.bulk import BulkActionRequest, BulkResultOut
from lokalhunt.services.bulk import bulk_transition_ads
from lokalhunt.services.errors import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from lokalhunt.services.repository import get_repository

router = APIRouter()


@router.post("", response_model=AdOut, status_code=status.HTTP_201_CREATED)
async def create_ad(
    payload: AdCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> AdOut:
    try:
        principal.require_scopes({"ads:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.create_ad(
            actor=principal.actor,
            company_id=payload.company_id,
            title=payload.title,
            description=payload.description,
            city=payload.city,
            category_name=payload.category_name,
            category_fields=payload.category_fields.model_dump(exclude_none=True),
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    return AdOut(**row)


@router.get("", response_model=list[AdOut])
async def list_ads(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    ad_status: AdStatus | None = Query(default=None, alias="status"),
    employer_id: str | None = Query(default=None, min_length=1),
    has_active_mou: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[AdOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_ads(
            status=ad_status,
            employer_id=employer_id,
            has_active_mou=has_active_mou,
            city=principal.actor.review_city,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [AdOut(**row) for row in rows]


@router.post("/bulk-approve", response_model=BulkResultOut)
async def bulk_approve_ads(
    payload: BulkActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> BulkResultOut:
    return await _run_bulk(payload, "approve", principal, repository, settings)


@router.post("/bulk-reject", response_model=BulkResultOut)
async def bulk_reject_ads(
    payload: BulkActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> BulkResultOut:
    return await _run_bulk(payload, "reject", principal, repository, settings)


@router.get("/{ad_id}", response_model=AdOut)
async def get_ad(
    ad_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> AdOut:
    try:
        principal.require_scopes({"catalog:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_ad(ad_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    # Unpublished ads are visible to moderators and the owning employer only.
    visible = (
        row["status"] == "APPROVED"
        or principal.has_any_scope({"moderation:read"})
        or (principal.employer_id is not None and row["employer_id"] == principal.employer_id)
    )
    if not visible:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"AD not found: {ad_id}")

    return AdOut(**row)


@router.post("/{ad_id}/submit", response_model=AdOut)
async def submit_ad(
    ad_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> AdOut:
    return await _transition(ad_id, "submit", None, principal, repository, {"ads:write"})


@router.post("/{ad_id}/approve", response_model=AdOut)
async def approve_ad(
    ad_id: str,
    payload: AdActionRequest | None = None,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> AdOut:
    return await _transition(ad_id, "approve", payload, principal, repository, {"moderation:write"})


@router.post("/{ad_id}/reject", response_model=AdOut)
async def reject_ad(
    ad_id: str,
    payload: AdActionRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> AdOut:
    return await _transition(ad_id, "reject", payload, principal, repository, {"moderation:write"})


@router.post("/{ad_id}/archive", response_model=AdOut)
async def archive_ad(
    ad_id: str,
    payload: AdActionRequest | None = None,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> AdOut:
    return await _transition(ad_id, "archive", payload, principal, repository, {"ads:write", "moderation:write"})


async def _transition(ad_id, action, payload, principal, repository, any_scopes: set[str]) -> AdOut:
    if not principal.has_any_scope(any_scopes):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"missing required scopes: one of {sorted(any_scopes)}",
        )

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.transition_ad(
            ad_id=ad_id,
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

    return AdOut(**row)


async def _run_bulk(payload, action, principal, repository, settings: Settings) -> BulkResultOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        result = await bulk_transition_ads(
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
