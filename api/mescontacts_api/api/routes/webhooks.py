import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from mescontacts_api.api.deps import get_lifecycle, get_payment_gateway
from mescontacts_api.core.errors import RepositoryUnavailableError, SignatureError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    gateway=Depends(get_payment_gateway),
    lifecycle=Depends(get_lifecycle),
) -> dict[str, object]:
    # Signature checks need the exact bytes the provider signed.
    raw_body = await request.body()
    try:
        outcome = await gateway.handle_webhook(raw_body, stripe_signature, lifecycle)
    except SignatureError as exc:
        logger.warning("rejected payment webhook reason=%s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return {
        "received": True,
        "event_type": outcome.event_type,
        "handled": outcome.handled,
        "post_id": outcome.post_id,
        "reason": outcome.reason,
    }
