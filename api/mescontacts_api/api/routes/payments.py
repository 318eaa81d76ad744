from fastapi import APIRouter, Depends, HTTPException, Query, status

from mescontacts_api.api.deps import get_lifecycle
from mescontacts_api.core.errors import (
    DuplicateReferenceError,
    InvalidTransitionError,
    NotFoundError,
    RepositoryUnavailableError,
    ValidationError,
)
from mescontacts_api.core.security import get_human_principal
from mescontacts_api.schemas.payments import (
    ConfirmPaymentRequest,
    PaymentMethod,
    PaymentNotesPatchRequest,
    PaymentOut,
    PaymentRecordRequest,
    PaymentStatsOut,
    PaymentStatus,
    PendingPaymentRequest,
    RefundRequest,
)
from mescontacts_api.services.lifecycle import Actor
from mescontacts_api.services.repository import get_repository
from mescontacts_api.services.validation import to_cents

router = APIRouter()


def _payments_actor(principal, scope: str = "payments:write") -> Actor:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return Actor(actor_type="human", actor_id=principal.actor_id)


@router.get("", response_model=list[PaymentOut])
async def list_payments(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    post_id: str | None = Query(default=None, min_length=1),
    payment_status: PaymentStatus | None = Query(default=None, alias="status"),
    method: PaymentMethod | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[PaymentOut]:
    _payments_actor(principal, "admin:read")

    try:
        rows = await repository.list_payments(
            post_id=post_id,
            status=payment_status,
            method=method,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PaymentOut(**row) for row in rows]


@router.get("/stats", response_model=PaymentStatsOut)
async def payment_stats(
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PaymentStatsOut:
    _payments_actor(principal, "admin:read")

    try:
        stats = await lifecycle.payment_stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PaymentStatsOut(**stats)


@router.post("", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def record_payment(
    payload: PaymentRecordRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PaymentOut:
    actor = _payments_actor(principal)

    try:
        outcome = await lifecycle.record_payment(
            payload.post_id,
            amount_cents=to_cents(payload.amount),
            method=payload.method,
            duration_days=payload.duration_days,
            actor=actor,
            auto_publish=payload.auto_publish,
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
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PaymentOut(**outcome.payment)


@router.post("/pending", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def record_pending_payment(
    payload: PendingPaymentRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PaymentOut:
    actor = _payments_actor(principal)

    try:
        row = await lifecycle.record_pending_payment(
            payload.post_id,
            amount_cents=to_cents(payload.amount),
            method=payload.method,
            duration_days=payload.duration_days,
            actor=actor,
            notes=payload.notes,
            external_reference=payload.external_reference,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DuplicateReferenceError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PaymentOut(**row)


@router.post("/{payment_id}/confirm", response_model=PaymentOut)
async def confirm_payment(
    payment_id: str,
    payload: ConfirmPaymentRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PaymentOut:
    actor = _payments_actor(principal)

    try:
        outcome = await lifecycle.confirm_pending_payment(payment_id, actor=actor, paid_at=payload.paid_at)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PaymentOut(**outcome.payment)


@router.post("/{payment_id}/refund", response_model=PaymentOut)
async def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PaymentOut:
    actor = _payments_actor(principal)

    try:
        outcome = await lifecycle.refund_payment(payment_id, actor=actor, notes=payload.notes)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PaymentOut(**outcome.payment)


@router.patch("/{payment_id}/notes", response_model=PaymentOut)
async def patch_payment_notes(
    payment_id: str,
    payload: PaymentNotesPatchRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle),
) -> PaymentOut:
    _payments_actor(principal)

    try:
        row = await lifecycle.update_payment_notes(payment_id, payload.notes)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PaymentOut(**row)
