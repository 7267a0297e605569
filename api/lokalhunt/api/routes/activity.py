import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from lokalhunt.core.config import Settings, get_settings
from lokalhunt.core.security import get_human_principal
from lokalhunt.schemas.activity import ActivityLogOut
from lokalhunt.services.audit import (
    ActivityActionType,
    ActivityEntityType,
    ActivityLogQuery,
    SortDir,
    render_activity_csv,
)
from lokalhunt.services.errors import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from lokalhunt.services.repository import get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


def activity_filters(
    action_type: ActivityActionType | None = Query(default=None),
    entity_type: ActivityEntityType | None = Query(default=None),
    entity_id: str | None = Query(default=None, min_length=1),
    performed_by: str | None = Query(default=None, min_length=1),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    q: str | None = Query(default=None, max_length=200),
    sort_dir: SortDir = Query(default="desc"),
) -> ActivityLogQuery:
    return ActivityLogQuery(
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        performed_by=performed_by,
        date_from=date_from,
        date_to=date_to,
        q=q,
        sort_dir=sort_dir,
    )


@router.get("", response_model=list[ActivityLogOut])
async def list_activity_logs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    query: ActivityLogQuery = Depends(activity_filters),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ActivityLogOut]:
    try:
        principal.require_scopes({"activity:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    query.limit = limit
    query.offset = offset
    try:
        rows = await repository.list_activity(query)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ActivityLogOut(**row) for row in rows]


@router.get("/export")
async def export_activity_logs(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    query: ActivityLogQuery = Depends(activity_filters),
) -> Response:
    try:
        principal.require_scopes({"activity:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    max_rows = settings.activity_export_max_rows
    # One extra row tells whether the export hit the cap.
    query.limit = max_rows + 1
    query.offset = 0
    try:
        rows = await repository.list_activity(query)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    truncated = len(rows) > max_rows
    if truncated:
        logger.warning("activity export truncated max_rows=%s", max_rows)
    filename = f"activity-log-{datetime.now(timezone.utc):%Y%m%d}.csv"
    return Response(
        content=render_activity_csv(rows[:max_rows]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Truncated": "true" if truncated else "false",
        },
    )


@router.get("/{entry_id}", response_model=ActivityLogOut)
async def get_activity_log(
    entry_id: int,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ActivityLogOut:
    try:
        principal.require_scopes({"activity:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_activity(entry_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return ActivityLogOut(**row)
