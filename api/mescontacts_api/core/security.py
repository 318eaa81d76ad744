import hashlib
import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from mescontacts_api.core.auth import Principal, PrincipalType
from mescontacts_api.core.config import Settings, get_settings

USER_SCOPES = frozenset({"posts:read", "posts:write", "checkout:write"})
ADMIN_SCOPES = USER_SCOPES | {"admin:read", "admin:write", "payments:write"}
ROLE_SCOPES: dict[str, frozenset[str]] = {"user": USER_SCOPES, "admin": ADMIN_SCOPES}
WORKER_SCOPES = frozenset({"posts:expire"})


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _unavailable(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def worker_key_matches(api_key: str, expected_sha256: str) -> bool:
    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    return hmac.compare_digest(digest, expected_sha256.strip().lower())


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise _unauthorized("machine auth requires X-API-Key and X-Module-Id")
    if not settings.worker_api_key_sha256:
        raise _unavailable("worker credentials are not configured")

    # Evaluate both comparisons so timing does not reveal which one failed.
    module_ok = hmac.compare_digest(x_module_id, settings.worker_module_id)
    key_ok = worker_key_matches(x_api_key, settings.worker_api_key_sha256)
    if not (module_ok and key_ok):
        raise _unauthorized("invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=x_module_id,
        scopes=set(WORKER_SCOPES),
        actor_id=x_module_id,
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise _unauthorized("human auth requires bearer token")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    if not (settings.supabase_url and settings.supabase_anon_key):
        raise _unavailable("Supabase auth is not configured")

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise _unauthorized("invalid bearer token")

    role = _resolve_human_role(user)
    email = user.get("email")
    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES[role]),
        actor_id=user_id,
        email=email if isinstance(email, str) and email else None,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(base_url=supabase_url.rstrip("/"), timeout=timeout_seconds) as client:
            response = await client.get(
                "/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": supabase_anon_key},
            )
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise _unavailable("Supabase auth verification unavailable") from exc

    if response.status_code in {401, 403}:
        raise _unauthorized("invalid bearer token")
    if response.status_code != 200:
        raise _unavailable("Supabase auth verification failed")
    payload = response.json()
    return payload if isinstance(payload, dict) else {}


def _resolve_human_role(user: dict[str, Any]) -> str:
    # user_metadata is user-editable, so only app_metadata can grant admin.
    app_metadata = user.get("app_metadata") or {}
    if not isinstance(app_metadata, dict):
        return "user"
    roles = app_metadata.get("roles")
    declared = [app_metadata.get("role"), *(roles if isinstance(roles, list) else [])]
    return "admin" if "admin" in declared else "user"
