from fastapi import APIRouter, Depends, HTTPException, status

from lokalhunt.core.config import Settings, get_settings
from lokalhunt.core.security import get_human_principal
from lokalhunt.schemas.summary import ReviewSummaryOut
from lokalhunt.services.errors import RepositoryUnavailableError
from lokalhunt.services.repository import get_repository

router = APIRouter()


@router.get("/summary", response_model=ReviewSummaryOut)
async def review_summary(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> ReviewSummaryOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.review_summary(warning_days=settings.mou_expiry_warning_days)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ReviewSummaryOut(**row)
