from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from typing import Any

import pytest
import stripe

from mescontacts_api.core.errors import ExternalServiceError, RepositoryUnavailableError, SignatureError
from mescontacts_api.services.lifecycle import Actor, PostLifecycle
from mescontacts_api.services.payment_gateway import StripeGateway
from mescontacts_api.services.store import InMemoryRepository

WEBHOOK_SECRET = "whsec_test_secret"


def _gateway(**overrides: Any) -> StripeGateway:
    options: dict[str, Any] = {
        "api_key": "sk_test_123",
        "webhook_secret": WEBHOOK_SECRET,
        "price_id": "price_123",
        "public_base_url": "https://mescontacts.example/",
        "checkout_duration_days": 30,
    }
    options.update(overrides)
    return StripeGateway(**options)


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _checkout_event(post_id: str | None, session_id: str = "cs_test_abc") -> str:
    metadata = {"postId": post_id} if post_id else {}
    return json.dumps(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": session_id, "amount_total": 4999, "metadata": metadata}},
        }
    )


class FlakyTransitionRepository(InMemoryRepository):
    """Fails the first post transition, as a dropped connection would."""

    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 1

    async def transition_post(self, post_id: str, **kwargs: Any) -> dict[str, Any] | None:
        if self.failures_left:
            self.failures_left -= 1
            raise RepositoryUnavailableError("connection reset")
        return await super().transition_post(post_id, **kwargs)


class RacingDeliveryRepository(InMemoryRepository):
    """Never reports a prior payment, like two deliveries checked at the same instant."""

    async def find_payment_by_reference(self, external_reference: str) -> dict[str, Any] | None:
        return None


def _draft_post(repository: InMemoryRepository) -> str:
    lifecycle = PostLifecycle(repository)
    post = asyncio.run(
        lifecycle.create(
            {"kind": "user", "id": "user-1"},
            {
                "business_name": "Fleuriste Rose",
                "category": "Fleurs",
                "phone": "6135550123",
                "email": "rose@fleurs.ca",
                "address": "9 rue Elgin",
                "city": "Ottawa",
                "province": "ON",
            },
            actor=Actor(actor_type="human", actor_id="user-1"),
        )
    )
    return post["id"]


def test_create_checkout_session_passes_post_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_create(**params: Any) -> SimpleNamespace:
        captured.update(params)
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    session = _gateway().create_checkout_session("post-1", "owner@example.ca", client_reference_id="user-1")

    assert session.session_id == "cs_test_1"
    assert session.url.endswith("cs_test_1")
    assert captured["api_key"] == "sk_test_123"
    assert captured["metadata"] == {"postId": "post-1"}
    assert captured["customer_email"] == "owner@example.ca"
    assert captured["line_items"] == [{"price": "price_123", "quantity": 1}]
    assert captured["success_url"].startswith("https://mescontacts.example/payment-status")


def test_create_checkout_session_wraps_provider_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_create(**_: Any) -> None:
        raise stripe.StripeError("card network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", failing_create)

    with pytest.raises(ExternalServiceError):
        _gateway().create_checkout_session("post-1", None)


def test_create_checkout_session_requires_configuration() -> None:
    with pytest.raises(ExternalServiceError):
        _gateway(api_key=None).create_checkout_session("post-1", None)


def test_parse_event_rejects_bad_signatures() -> None:
    payload = _checkout_event("post-1")
    gateway = _gateway()

    with pytest.raises(SignatureError):
        gateway.parse_event(payload.encode("utf-8"), None)
    with pytest.raises(SignatureError):
        gateway.parse_event(payload.encode("utf-8"), sign(payload, secret="whsec_other"))
    with pytest.raises(SignatureError):
        gateway.parse_event(payload.encode("utf-8"), sign(payload, timestamp=int(time.time()) - 3600))
    with pytest.raises(SignatureError):
        _gateway(webhook_secret=None).parse_event(payload.encode("utf-8"), sign(payload))


def test_handle_webhook_publishes_post_once() -> None:
    repository = InMemoryRepository()
    post_id = _draft_post(repository)
    lifecycle = PostLifecycle(repository)
    payload = _checkout_event(post_id)
    gateway = _gateway()

    first = asyncio.run(gateway.handle_webhook(payload.encode("utf-8"), sign(payload), lifecycle))
    second = asyncio.run(gateway.handle_webhook(payload.encode("utf-8"), sign(payload), lifecycle))

    assert first.handled is True
    assert first.reason == "published"
    assert second.reason == "duplicate_session"
    assert repository.posts[post_id]["status"] == "PUBLISHED"
    assert len(repository.payments) == 1
    payment = next(iter(repository.payments.values()))
    assert payment["amount_cents"] == 4999
    assert payment["duration_days"] == 30


def test_handle_webhook_ignores_other_events_and_missing_posts() -> None:
    repository = InMemoryRepository()
    lifecycle = PostLifecycle(repository)
    gateway = _gateway()

    other = json.dumps({"id": "evt_2", "type": "payment_intent.created", "data": {"object": {}}})
    outcome = asyncio.run(gateway.handle_webhook(other.encode("utf-8"), sign(other), lifecycle))
    assert outcome.handled is False
    assert outcome.reason == "unhandled_event_type"

    no_post = _checkout_event(None)
    outcome = asyncio.run(gateway.handle_webhook(no_post.encode("utf-8"), sign(no_post), lifecycle))
    assert outcome.reason == "missing_post_id"

    unknown = _checkout_event("does-not-exist")
    outcome = asyncio.run(gateway.handle_webhook(unknown.encode("utf-8"), sign(unknown), lifecycle))
    assert outcome.handled is False
    assert outcome.post_id == "does-not-exist"
    assert repository.payments == {}


def test_parse_event_rejects_non_utf8_body() -> None:
    with pytest.raises(SignatureError):
        _gateway().parse_event(b"\xff\xfe", "t=1,v1=bad")


def test_handle_webhook_retry_publishes_after_failed_transition() -> None:
    repository = FlakyTransitionRepository()
    post_id = _draft_post(repository)
    lifecycle = PostLifecycle(repository)
    payload = _checkout_event(post_id, session_id="cs_1")
    gateway = _gateway()

    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(gateway.handle_webhook(payload.encode("utf-8"), sign(payload), lifecycle))
    assert repository.payments == {}
    assert repository.posts[post_id]["status"] == "DRAFT"

    retried = asyncio.run(gateway.handle_webhook(payload.encode("utf-8"), sign(payload), lifecycle))

    assert retried.reason == "published"
    assert repository.posts[post_id]["status"] == "PUBLISHED"
    assert [row["external_reference"] for row in repository.payments.values()] == ["cs_1"]


def test_handle_webhook_unique_reference_stops_concurrent_delivery() -> None:
    repository = RacingDeliveryRepository()
    post_id = _draft_post(repository)
    lifecycle = PostLifecycle(repository)
    payload = _checkout_event(post_id)
    gateway = _gateway()

    first = asyncio.run(gateway.handle_webhook(payload.encode("utf-8"), sign(payload), lifecycle))
    published_until = repository.posts[post_id]["published_until"]
    second = asyncio.run(gateway.handle_webhook(payload.encode("utf-8"), sign(payload), lifecycle))

    assert first.reason == "published"
    assert second.handled is True
    assert second.reason == "duplicate_session"
    assert len(repository.payments) == 1
    assert repository.posts[post_id]["published_until"] == published_until
