from fastapi import APIRouter, Depends, HTTPException, Query, status

from mescontacts_api.api.deps import get_lifecycle
from mescontacts_api.core.config import Settings, get_settings
from mescontacts_api.core.errors import (
    DuplicateReferenceError,
    InvalidTransitionError,
    NotFoundError,
    RepositoryUnavailableError,
    ValidationError,
)
from mescontacts_api.core.security import get_human_principal
from mescontacts_api.schemas.payments import PaymentOut, RenewRequest
from mescontacts_api.schemas.posts import (
    AdminPostCreateRequest,
    ExpirationRunOut,
    PostOut,
    PostStatus,
    PostStatusPatchRequest,
    StatusHistoryOut,
)
from mescontacts_api.services.lifecycle import Actor
from mescontacts_api.services.repository import get_repository
from mescontacts_api.services.validation import to_cents

router = APIRouter()


def _admin_actor(principal, scope: str) -> Actor:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")
    return Actor(actor_type="human", actor_id=principal.actor_id)


@router.get("/posts", response_model=list[PostOut])
async def list_posts(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    post_status: PostStatus | None = Query(default=None, alias="status"),
    owner_kind: str | None = Query(default=None, pattern="^(user|organization)$"),
    owner_id: str | None = Query(default=None, min_length=1),
    q: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[PostOut]:
    _admin_actor(principal, "admin:read")

    try:
        rows = await repository.list_posts(
            status=post_status,
            owner_kind=owner_kind,
            owner_id=owner_id,
            q=q,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PostOut(**row) for row in rows]


@router.post("/posts", response_model=PostOut, status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: AdminPostCreateRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PostOut:
    actor = _admin_actor(principal, "admin:write")

    attributes = payload.model_dump(exclude={"owner", "status", "duration_days"})
    try:
        row = await lifecycle.create(
            payload.owner,
            attributes,
            actor=actor,
            status=payload.status,
            duration_days=payload.duration_days,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostOut(**row)


@router.post("/posts/expire", response_model=ExpirationRunOut)
async def expire_posts_now(
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
    settings: Settings = Depends(get_settings),
) -> ExpirationRunOut:
    _admin_actor(principal, "admin:write")

    try:
        expired = await lifecycle.expire(batch_size=settings.expire_batch_max_size)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ExpirationRunOut(count=len(expired), post_ids=expired)


@router.get("/posts/{post_id}", response_model=PostOut)
async def get_post(
    post_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> PostOut:
    _admin_actor(principal, "admin:read")

    try:
        row = await repository.get_post(post_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostOut(**row)


@router.patch("/posts/{post_id}/status", response_model=PostOut)
async def patch_post_status(
    post_id: str,
    payload: PostStatusPatchRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PostOut:
    actor = _admin_actor(principal, "admin:write")

    try:
        row = await lifecycle.set_status(
            post_id,
            payload.status,
            actor=actor,
            duration_days=payload.duration_days,
            reason=payload.reason,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PostOut(**row)


@router.get("/posts/{post_id}/history", response_model=list[StatusHistoryOut])
async def list_post_history(
    post_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[StatusHistoryOut]:
    _admin_actor(principal, "admin:read")

    try:
        await repository.get_post(post_id)
        rows = await repository.list_status_history(post_id=post_id, limit=limit, offset=offset)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [StatusHistoryOut(**row) for row in rows]


@router.post("/posts/{post_id}/renew", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def renew_post(
    post_id: str,
    payload: RenewRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PaymentOut:
    actor = _admin_actor(principal, "payments:write")

    try:
        outcome = await lifecycle.renew(
            post_id,
            amount_cents=to_cents(payload.amount),
            method=payload.method,
            duration_days=payload.duration_days,
            actor=actor,
            paid_at=payload.paid_at,
            notes=payload.notes,
            external_reference=payload.external_reference,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DuplicateReferenceError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PaymentOut(**outcome.payment)
