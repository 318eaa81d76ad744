from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mescontacts_api.core.errors import (
    DuplicateReferenceError,
    InvalidTransitionError,
    NotFoundError,
    RepositoryUnavailableError,
    ValidationError,
)
from mescontacts_api.services.lifecycle import Actor, PostLifecycle
from mescontacts_api.services.store import InMemoryRepository

NOW = datetime(2026, 5, 10, 8, 30, tzinfo=timezone.utc)
ADMIN = Actor(actor_type="human", actor_id="admin-1")

ATTRIBUTES = {
    "business_name": "Garage Lévesque",
    "category": "Automobile",
    "phone": "(418) 555-0101",
    "email": "info@garagelevesque.ca",
    "address": "400 boulevard Laurier",
    "city": "Québec",
    "province": "QC",
}


def _setup(status: str = "DRAFT") -> tuple[PostLifecycle, InMemoryRepository, str]:
    repository = InMemoryRepository()
    lifecycle = PostLifecycle(repository, clock=lambda: NOW)
    post = asyncio.run(
        lifecycle.create(
            {"kind": "organization", "id": "org-9"},
            ATTRIBUTES,
            actor=ADMIN,
            status=status,
            duration_days=10 if status == "PUBLISHED" else None,
        )
    )
    return lifecycle, repository, post["id"]


def test_record_payment_publishes_post() -> None:
    lifecycle, repository, post_id = _setup()

    outcome = asyncio.run(
        lifecycle.record_payment(post_id, amount_cents=4999, method="E_TRANSFER", duration_days=30, actor=ADMIN)
    )

    assert outcome.published is True
    assert outcome.payment["status"] == "COMPLETED"
    assert outcome.payment["currency"] == "CAD"
    assert outcome.payment["paid_at"] == NOW
    assert outcome.post["status"] == "PUBLISHED"
    assert outcome.post["published_until"] == NOW + timedelta(days=30)
    assert "49.99 CAD" in repository.status_history[-1]["reason"]


def test_record_payment_without_auto_publish_keeps_status() -> None:
    lifecycle, _, post_id = _setup()

    outcome = asyncio.run(
        lifecycle.record_payment(
            post_id,
            amount_cents=1000,
            method="CASH",
            duration_days=30,
            actor=ADMIN,
            auto_publish=False,
        )
    )

    assert outcome.published is False
    assert outcome.post["status"] == "DRAFT"


def test_record_payment_rejects_bad_input() -> None:
    lifecycle, repository, post_id = _setup()

    with pytest.raises(ValidationError):
        asyncio.run(lifecycle.record_payment(post_id, amount_cents=-1, method="CASH", duration_days=30, actor=ADMIN))
    with pytest.raises(ValidationError):
        asyncio.run(lifecycle.record_payment(post_id, amount_cents=100, method="BITCOIN", duration_days=30, actor=ADMIN))
    with pytest.raises(ValidationError):
        asyncio.run(lifecycle.record_payment(post_id, amount_cents=100, method="CASH", duration_days=0, actor=ADMIN))
    with pytest.raises(NotFoundError):
        asyncio.run(lifecycle.record_payment("missing", amount_cents=100, method="CASH", duration_days=5, actor=ADMIN))
    assert repository.payments == {}


def test_pending_payment_then_confirm() -> None:
    lifecycle, repository, post_id = _setup()

    pending = asyncio.run(
        lifecycle.record_pending_payment(post_id, amount_cents=2500, method="BANK_TRANSFER", duration_days=14, actor=ADMIN)
    )
    assert pending["status"] == "PENDING"
    assert pending["paid_at"] is None
    assert repository.posts[post_id]["status"] == "DRAFT"

    outcome = asyncio.run(lifecycle.confirm_pending_payment(pending["id"], actor=ADMIN))
    assert outcome.payment["status"] == "COMPLETED"
    assert outcome.post["status"] == "PUBLISHED"
    assert outcome.post["published_until"] == NOW + timedelta(days=14)

    with pytest.raises(InvalidTransitionError):
        asyncio.run(lifecycle.confirm_pending_payment(pending["id"], actor=ADMIN))


def test_refund_disables_published_post() -> None:
    lifecycle, _, post_id = _setup()
    paid = asyncio.run(lifecycle.record_payment(post_id, amount_cents=3000, method="CARD", duration_days=30, actor=ADMIN))

    outcome = asyncio.run(lifecycle.refund_payment(paid.payment["id"], actor=ADMIN, notes="client request"))

    assert outcome.payment["status"] == "REFUNDED"
    assert outcome.payment["notes"].endswith("[REFUNDED] client request")
    assert outcome.post["status"] == "DISABLED"
    assert outcome.post["published_until"] is None

    with pytest.raises(InvalidTransitionError):
        asyncio.run(lifecycle.refund_payment(paid.payment["id"], actor=ADMIN))


def test_renew_only_from_expired_or_disabled() -> None:
    lifecycle, _, post_id = _setup(status="PUBLISHED")

    with pytest.raises(InvalidTransitionError):
        asyncio.run(lifecycle.renew(post_id, amount_cents=1500, method="CASH", duration_days=30, actor=ADMIN))

    asyncio.run(lifecycle.expire(NOW + timedelta(days=10)))
    outcome = asyncio.run(
        lifecycle.renew(post_id, amount_cents=1500, method="CASH", duration_days=30, actor=ADMIN, notes="annual")
    )

    assert outcome.post["status"] == "PUBLISHED"
    assert outcome.payment["notes"] == "[RENEWAL] annual"


def test_publish_from_checkout_is_idempotent() -> None:
    lifecycle, repository, post_id = _setup()

    first = asyncio.run(lifecycle.publish_from_checkout(post_id, session_id="cs_test_1", duration_days=30, amount_cents=4999))
    second = asyncio.run(lifecycle.publish_from_checkout(post_id, session_id="cs_test_1", duration_days=30, amount_cents=4999))

    assert first is not None
    assert first.payment["method"] == "CARD"
    assert first.payment["external_reference"] == "cs_test_1"
    assert first.post["status"] == "PUBLISHED"
    assert second is None
    assert len(repository.payments) == 1
    assert repository.status_history[-1]["actor_type"] == "machine"


def test_update_payment_notes() -> None:
    lifecycle, _, post_id = _setup()
    paid = asyncio.run(lifecycle.record_payment(post_id, amount_cents=100, method="OTHER", duration_days=1, actor=ADMIN))

    updated = asyncio.run(lifecycle.update_payment_notes(paid.payment["id"], "cheque #42"))

    assert updated["notes"] == "cheque #42"
    with pytest.raises(NotFoundError):
        asyncio.run(lifecycle.update_payment_notes("missing", "x"))


def test_payment_stats_buckets_by_status() -> None:
    lifecycle, _, post_id = _setup()
    paid = asyncio.run(lifecycle.record_payment(post_id, amount_cents=5000, method="CASH", duration_days=30, actor=ADMIN))
    asyncio.run(lifecycle.record_payment(post_id, amount_cents=2000, method="CARD", duration_days=30, actor=ADMIN))
    asyncio.run(lifecycle.record_pending_payment(post_id, amount_cents=700, method="CASH", duration_days=30, actor=ADMIN))
    asyncio.run(lifecycle.refund_payment(paid.payment["id"], actor=ADMIN))

    stats = asyncio.run(lifecycle.payment_stats())

    assert stats["total_count"] == 3
    assert stats["completed_count"] == 1
    assert stats["total_revenue_cents"] == 2000
    assert stats["pending_amount_cents"] == 700
    assert stats["refunded_amount_cents"] == 5000
    assert stats["by_method"] == {"CARD": 2000}


def test_record_payment_rejects_reused_reference() -> None:
    lifecycle, repository, post_id = _setup()
    asyncio.run(
        lifecycle.record_payment(
            post_id, amount_cents=2500, method="BANK_TRANSFER", duration_days=30, actor=ADMIN, external_reference="VIR-42"
        )
    )

    with pytest.raises(DuplicateReferenceError):
        asyncio.run(
            lifecycle.record_payment(
                post_id, amount_cents=2500, method="BANK_TRANSFER", duration_days=60, actor=ADMIN, external_reference="VIR-42"
            )
        )

    assert len(repository.payments) == 1
    assert repository.posts[post_id]["published_until"] == NOW + timedelta(days=30)


def test_failed_publish_leaves_no_payment_behind() -> None:
    class BrokenTransitionRepository(InMemoryRepository):
        async def transition_post(self, post_id: str, **kwargs: object) -> dict | None:
            raise RepositoryUnavailableError("connection reset")

    repository = BrokenTransitionRepository()
    lifecycle = PostLifecycle(repository, clock=lambda: NOW)
    post = asyncio.run(lifecycle.create({"kind": "organization", "id": "org-9"}, ATTRIBUTES, actor=ADMIN))

    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(lifecycle.record_payment(post["id"], amount_cents=4999, method="CASH", duration_days=30, actor=ADMIN))

    assert repository.payments == {}
    assert repository.posts[post["id"]]["status"] == "DRAFT"
