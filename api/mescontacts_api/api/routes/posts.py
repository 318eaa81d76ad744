from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool

from mescontacts_api.api.deps import get_lifecycle, get_payment_gateway
from mescontacts_api.core.errors import (
    ExternalServiceError,
    NotFoundError,
    RepositoryUnavailableError,
    ValidationError,
)
from mescontacts_api.core.auth import Principal
from mescontacts_api.core.security import get_human_principal
from mescontacts_api.schemas.posts import CheckoutSessionOut, PostCreateRequest, PostOut, PostUpdateRequest
from mescontacts_api.services.lifecycle import Actor
from mescontacts_api.services.repository import get_repository

router = APIRouter()


@router.post("", response_model=PostOut, status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: PostCreateRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PostOut:
    try:
        principal.require_scopes({"posts:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await lifecycle.create(
            {"kind": "user", "id": principal.actor_id},
            payload.model_dump(),
            actor=Actor(actor_type="human", actor_id=principal.actor_id),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostOut(**row)


@router.get("", response_model=list[PostOut])
async def list_published_posts(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    q: str | None = Query(default=None, min_length=1),
    category: str | None = Query(default=None, min_length=1),
    province: str | None = Query(default=None, min_length=1),
    city: str | None = Query(default=None, min_length=1),
    repository=Depends(get_repository),
) -> list[PostOut]:
    try:
        rows = await repository.list_posts(
            status="PUBLISHED",
            category=category,
            province=province,
            city=city,
            q=q,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PostOut(**row) for row in rows]


@router.get("/mine", response_model=list[PostOut])
async def list_my_posts(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[PostOut]:
    try:
        principal.require_scopes({"posts:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_posts(
            owner_kind="user",
            owner_id=principal.actor_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PostOut(**row) for row in rows]


@router.get("/{post_id}", response_model=PostOut)
async def get_post(post_id: str, repository=Depends(get_repository)) -> PostOut:
    try:
        row = await repository.get_post(post_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if row["status"] != "PUBLISHED":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="post not found")
    return PostOut(**row)


@router.post("/{post_id}/checkout", response_model=CheckoutSessionOut)
async def start_checkout(
    post_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    gateway=Depends(get_payment_gateway),
) -> CheckoutSessionOut:
    try:
        principal.require_scopes({"checkout:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_post(post_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if not (principal.is_admin or principal.owns(row["owner"])):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="post belongs to another owner")
    if row["status"] == "PUBLISHED":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="post is already published")

    try:
        session = await run_in_threadpool(
            gateway.create_checkout_session,
            post_id,
            principal.email or row["email"],
            client_reference_id=principal.actor_id,
        )
    except ExternalServiceError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return CheckoutSessionOut(session_id=session.session_id, url=session.url)


def _editing_owner(principal: Principal) -> dict[str, str] | None:
    # Admins may edit any post; everyone else only the posts they own.
    if principal.is_admin:
        return None
    return {"kind": "user", "id": principal.actor_id or ""}


@router.patch("/{post_id}", response_model=PostOut)
async def update_post(
    post_id: str,
    payload: PostUpdateRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PostOut:
    try:
        principal.require_scopes({"posts:write"})
        row = await lifecycle.update(
            post_id,
            payload.model_dump(),
            actor=Actor(actor_type="human", actor_id=principal.actor_id),
            owner=_editing_owner(principal),
        )
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostOut(**row)


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(
    post_id: str,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> None:
    try:
        principal.require_scopes({"posts:write"})
        await lifecycle.delete(
            post_id,
            actor=Actor(actor_type="human", actor_id=principal.actor_id),
            owner=_editing_owner(principal),
        )
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
