from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from lokalhunt.core.auth import ActorRole, Principal
from lokalhunt.core.config import Settings, get_settings

ROLE_SCOPES: dict[ActorRole, set[str]] = {
    ActorRole.CANDIDATE: {"catalog:read"},
    ActorRole.EMPLOYER: {"catalog:read", "employer:write", "ads:write"},
    ActorRole.BRANCH_ADMIN: {
        "catalog:read",
        "moderation:read",
        "moderation:write",
        "mou:write",
        "activity:read",
    },
    ActorRole.SUPER_ADMIN: {
        "catalog:read",
        "moderation:read",
        "moderation:write",
        "mou:write",
        "activity:read",
        "admin:write",
    },
}


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)
    employer_id = _resolve_app_metadata_text(user, "employer_id") if role is ActorRole.EMPLOYER else None
    assigned_city = _resolve_app_metadata_text(user, "assigned_city") if role is ActorRole.BRANCH_ADMIN else None

    return Principal(
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES[role]),
        actor_id=user_id,
        employer_id=employer_id,
        assigned_city=assigned_city,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> ActorRole:
    # Roles come from app_metadata only; user_metadata is user-editable.
    role = _resolve_app_metadata_text(user, "role")
    if role:
        try:
            return ActorRole(role)
        except ValueError:
            return ActorRole.CANDIDATE
    return ActorRole.CANDIDATE


def _resolve_app_metadata_text(user: dict[str, Any], key: str) -> str | None:
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return None
    value = app_metadata.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
