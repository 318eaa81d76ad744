from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import stripe

from mescontacts_api.core.config import Settings
from mescontacts_api.core.errors import ExternalServiceError, NotFoundError, SignatureError, ValidationError
from mescontacts_api.services.lifecycle import PostLifecycle

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass(slots=True)
class CheckoutSession:
    session_id: str
    url: str


@dataclass(slots=True)
class WebhookOutcome:
    event_type: str
    handled: bool
    post_id: str | None = None
    reason: str | None = None


class StripeGateway:
    def __init__(
        self,
        *,
        api_key: str | None,
        webhook_secret: str | None,
        price_id: str | None,
        public_base_url: str,
        checkout_duration_days: int,
        tolerance_seconds: int = 300,
    ) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_id = price_id
        self.public_base_url = public_base_url.rstrip("/")
        self.checkout_duration_days = checkout_duration_days
        self.tolerance_seconds = tolerance_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeGateway:
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            price_id=settings.stripe_price_id,
            public_base_url=settings.public_base_url,
            checkout_duration_days=settings.checkout_duration_days,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )

    def create_checkout_session(
        self,
        post_id: str,
        owner_email: str | None,
        *,
        client_reference_id: str | None = None,
    ) -> CheckoutSession:
        if not self.api_key or not self.price_id:
            raise ExternalServiceError("payment provider is not configured")

        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{"price": self.price_id, "quantity": 1}],
            "metadata": {"postId": post_id},
            "success_url": f"{self.public_base_url}/payment-status?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.public_base_url}/payment-status?canceled=true",
        }
        if owner_email:
            params["customer_email"] = owner_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id

        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            logger.warning("checkout session creation failed post_id=%s error=%s", post_id, exc)
            raise ExternalServiceError("payment provider rejected the checkout request") from exc

        url = getattr(session, "url", None)
        if not url:
            raise ExternalServiceError("payment provider returned no checkout url")
        return CheckoutSession(session_id=session.id, url=url)

    def parse_event(self, raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
        if not self.webhook_secret:
            raise SignatureError("webhook secret is not configured")
        if not signature_header:
            raise SignatureError("missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as exc:
            # Stripe only signs UTF-8 JSON, so such a body cannot carry a valid signature.
            raise SignatureError("invalid webhook signature") from exc
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureError("invalid webhook signature") from exc

        try:
            event = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise SignatureError("webhook payload is not valid JSON") from exc
        if not isinstance(event, dict):
            raise SignatureError("webhook payload is not an event object")
        return event

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature_header: str | None,
        lifecycle: PostLifecycle,
    ) -> WebhookOutcome:
        event = self.parse_event(raw_body, signature_header)
        event_type = str(event.get("type") or "")

        if event_type != CHECKOUT_COMPLETED:
            logger.info("ignored payment webhook event type=%s", event_type)
            return WebhookOutcome(event_type=event_type, handled=False, reason="unhandled_event_type")

        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            logger.warning("checkout event without session object id=%s", event.get("id"))
            return WebhookOutcome(event_type=event_type, handled=False, reason="missing_session")

        metadata = session.get("metadata")
        post_id = metadata.get("postId") if isinstance(metadata, dict) else None
        if not isinstance(post_id, str) or not post_id:
            logger.warning("checkout session without postId metadata session_id=%s", session.get("id"))
            return WebhookOutcome(event_type=event_type, handled=False, reason="missing_post_id")

        session_id = str(session.get("id") or event.get("id") or "")
        amount_total = session.get("amount_total")
        try:
            outcome = await lifecycle.publish_from_checkout(
                post_id,
                session_id=session_id,
                duration_days=self.checkout_duration_days,
                amount_cents=amount_total if isinstance(amount_total, int) else None,
            )
        except (NotFoundError, ValidationError) as exc:
            logger.warning("checkout publish skipped post_id=%s reason=%s", post_id, exc)
            return WebhookOutcome(event_type=event_type, handled=False, post_id=post_id, reason=str(exc))

        if outcome is None:
            return WebhookOutcome(event_type=event_type, handled=True, post_id=post_id, reason="duplicate_session")
        return WebhookOutcome(event_type=event_type, handled=True, post_id=post_id, reason="published")
