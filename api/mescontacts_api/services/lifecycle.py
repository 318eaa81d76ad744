"""Post lifecycle state machine.

States move DRAFT -> PUBLISHED -> EXPIRED. DISABLED is reachable from any
state and an admin can move a post back to PUBLISHED with a fresh duration.
``published_until`` is only ever non-null while a post is PUBLISHED.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from mescontacts_api.core.errors import (
    DuplicateReferenceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from mescontacts_api.services.validation import (
    validate_amount_cents,
    validate_duration_days,
    validate_post_attributes,
)

logger = logging.getLogger(__name__)

POST_STATUSES = {"DRAFT", "PUBLISHED", "DISABLED", "EXPIRED"}
ADMIN_STATUS_TARGETS = {"PUBLISHED", "DISABLED"}
RENEWABLE_STATUSES = {"EXPIRED", "DISABLED"}
OWNER_KINDS = {"user", "organization"}
PAYMENT_METHODS = {"CASH", "E_TRANSFER", "BANK_TRANSFER", "CARD", "OTHER"}


class PostRepository(Protocol):
    async def insert_post(self, **kwargs: Any) -> dict[str, Any]: ...

    async def get_post(self, post_id: str) -> dict[str, Any]: ...

    async def update_post_attributes(self, post_id: str, **kwargs: Any) -> dict[str, Any]: ...

    async def delete_post(self, post_id: str) -> None: ...

    async def list_due_for_expiry(self, *, now: datetime, limit: int) -> list[dict[str, Any]]: ...

    async def transition_post(self, post_id: str, **kwargs: Any) -> dict[str, Any] | None: ...

    async def insert_payment(self, record: dict[str, Any]) -> dict[str, Any]: ...

    async def record_payment_and_publish(
        self, record: dict[str, Any], **kwargs: Any
    ) -> tuple[dict[str, Any], dict[str, Any]]: ...

    async def get_payment(self, payment_id: str) -> dict[str, Any]: ...

    async def find_payment_by_reference(self, external_reference: str) -> dict[str, Any] | None: ...

    async def update_payment(self, payment_id: str, **kwargs: Any) -> dict[str, Any] | None: ...

    async def summarize_payments(self) -> list[dict[str, Any]]: ...


@dataclass(slots=True)
class Actor:
    actor_type: str
    actor_id: str | None = None


SYSTEM_ACTOR = Actor(actor_type="system")


@dataclass(slots=True)
class PaymentOutcome:
    payment: dict[str, Any]
    post: dict[str, Any]
    published: bool


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PostLifecycle:
    def __init__(
        self,
        repository: PostRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
        currency: str = "CAD",
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.currency = currency

    async def create(
        self,
        owner: Any,
        attributes: dict[str, Any],
        *,
        actor: Actor,
        status: str = "DRAFT",
        duration_days: int | None = None,
    ) -> dict[str, Any]:
        owner_kind, owner_id = _owner_parts(owner)
        normalized = validate_post_attributes(attributes)
        if status not in POST_STATUSES:
            raise ValidationError(f"unknown post status: {status}")

        now = self.clock()
        published_at: datetime | None = None
        published_until: datetime | None = None
        if status == "PUBLISHED":
            if duration_days is None:
                raise InvalidTransitionError("publishing requires duration_days")
            published_at = now
            published_until = now + timedelta(days=validate_duration_days(duration_days))

        post = await self.repository.insert_post(
            owner_kind=owner_kind,
            owner_id=owner_id,
            attributes=normalized,
            status=status,
            published_at=published_at,
            published_until=published_until,
            created_by=actor.actor_id,
            created_at=now,
            history={"actor_type": actor.actor_type, "actor_id": actor.actor_id, "reason": "created"},
        )
        logger.info("post created id=%s owner_kind=%s status=%s", post["id"], owner_kind, status)
        return post

    async def record_payment(
        self,
        post_id: str,
        *,
        amount_cents: int,
        method: str,
        duration_days: int,
        actor: Actor,
        auto_publish: bool = True,
        paid_at: datetime | None = None,
        notes: str | None = None,
        external_reference: str | None = None,
    ) -> PaymentOutcome:
        await self.repository.get_post(post_id)
        now = self.clock()
        record = self._payment_record(
            post_id=post_id,
            amount_cents=amount_cents,
            method=method,
            duration_days=duration_days,
            status="COMPLETED",
            auto_publish=auto_publish,
            paid_at=paid_at or now,
            notes=notes,
            external_reference=external_reference,
            recorded_by=actor.actor_id,
            created_at=now,
        )

        if not auto_publish:
            payment = await self.repository.insert_payment(record)
            post = await self.repository.get_post(post_id)
            return PaymentOutcome(payment=payment, post=post, published=False)

        reason = f"payment of {_format_amount(record['amount_cents'])} {self.currency} for {record['duration_days']} days"
        return await self._pay_and_publish(record, actor=actor, reason=reason)

    async def record_pending_payment(
        self,
        post_id: str,
        *,
        amount_cents: int,
        method: str,
        duration_days: int,
        actor: Actor,
        notes: str | None = None,
        external_reference: str | None = None,
    ) -> dict[str, Any]:
        await self.repository.get_post(post_id)
        return await self.repository.insert_payment(
            self._payment_record(
                post_id=post_id,
                amount_cents=amount_cents,
                method=method,
                duration_days=duration_days,
                status="PENDING",
                auto_publish=True,
                paid_at=None,
                notes=notes,
                external_reference=external_reference,
                recorded_by=actor.actor_id,
                created_at=self.clock(),
            )
        )

    async def confirm_pending_payment(
        self,
        payment_id: str,
        *,
        actor: Actor,
        paid_at: datetime | None = None,
    ) -> PaymentOutcome:
        payment = await self.repository.get_payment(payment_id)
        if payment["status"] != "PENDING":
            raise InvalidTransitionError("payment is not pending")

        confirmed = await self.repository.update_payment(
            payment_id,
            changes={"status": "COMPLETED", "paid_at": paid_at or self.clock()},
            expected_status="PENDING",
        )
        if confirmed is None:
            raise InvalidTransitionError("payment is not pending")

        post = await self._publish(
            confirmed["post_id"],
            duration_days=confirmed["duration_days"],
            actor=actor,
            reason=f"confirmed payment of {_format_amount(confirmed['amount_cents'])} {self.currency}",
        )
        return PaymentOutcome(payment=confirmed, post=post, published=True)

    async def refund_payment(self, payment_id: str, *, actor: Actor, notes: str | None = None) -> PaymentOutcome:
        payment = await self.repository.get_payment(payment_id)
        if payment["status"] != "COMPLETED":
            raise InvalidTransitionError("only completed payments can be refunded")

        changes: dict[str, Any] = {"status": "REFUNDED"}
        if notes:
            changes["notes"] = f"{payment.get('notes') or ''}\n[REFUNDED] {notes}".strip()
        refunded = await self.repository.update_payment(payment_id, changes=changes, expected_status="COMPLETED")
        if refunded is None:
            raise InvalidTransitionError("only completed payments can be refunded")

        now = self.clock()
        post = await self.repository.transition_post(
            refunded["post_id"],
            status="DISABLED",
            published_at=None,
            published_until=None,
            expected_status="PUBLISHED",
            changed_at=now,
            history={"actor_type": actor.actor_type, "actor_id": actor.actor_id, "reason": "payment refunded"},
        )
        if post is None:
            post = await self.repository.get_post(refunded["post_id"])
        return PaymentOutcome(payment=refunded, post=post, published=False)

    async def renew(
        self,
        post_id: str,
        *,
        amount_cents: int,
        method: str,
        duration_days: int,
        actor: Actor,
        paid_at: datetime | None = None,
        notes: str | None = None,
        external_reference: str | None = None,
    ) -> PaymentOutcome:
        post = await self.repository.get_post(post_id)
        if post["status"] not in RENEWABLE_STATUSES:
            raise InvalidTransitionError("only expired or disabled posts can be renewed")

        now = self.clock()
        record = self._payment_record(
            post_id=post_id,
            amount_cents=amount_cents,
            method=method,
            duration_days=duration_days,
            status="COMPLETED",
            auto_publish=True,
            paid_at=paid_at or now,
            notes=f"[RENEWAL] {notes}" if notes else "[RENEWAL]",
            external_reference=external_reference,
            recorded_by=actor.actor_id,
            created_at=now,
        )
        reason = f"renewal of {_format_amount(record['amount_cents'])} {self.currency} for {record['duration_days']} days"
        return await self._pay_and_publish(record, actor=actor, reason=reason)

    async def update_payment_notes(self, payment_id: str, notes: str) -> dict[str, Any]:
        updated = await self.repository.update_payment(payment_id, changes={"notes": notes})
        if updated is None:
            raise NotFoundError("payment not found")
        return updated

    async def set_status(
        self,
        post_id: str,
        status: str,
        *,
        actor: Actor,
        duration_days: int | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        if status not in ADMIN_STATUS_TARGETS:
            raise InvalidTransitionError(f"cannot set status to {status}")

        await self.repository.get_post(post_id)
        if status == "PUBLISHED":
            if duration_days is None:
                raise InvalidTransitionError("publishing without a payment requires duration_days")
            return await self._publish(post_id, duration_days=duration_days, actor=actor, reason=reason or "admin override")

        post = await self.repository.transition_post(
            post_id,
            status="DISABLED",
            published_at=None,
            published_until=None,
            expected_status=None,
            changed_at=self.clock(),
            history={"actor_type": actor.actor_type, "actor_id": actor.actor_id, "reason": reason or "admin override"},
        )
        if post is None:
            raise NotFoundError("post not found")
        logger.info("post disabled id=%s actor=%s", post_id, actor.actor_id)
        return post

    async def publish_from_checkout(
        self,
        post_id: str,
        *,
        session_id: str,
        duration_days: int,
        amount_cents: int | None = None,
    ) -> PaymentOutcome | None:
        """Publish after a completed provider checkout.

        Returns None when the session was already processed, since providers
        deliver the same event more than once.
        """
        actor = Actor(actor_type="machine", actor_id="stripe")
        if await self.repository.find_payment_by_reference(session_id) is not None:
            logger.info("checkout session already processed session_id=%s post_id=%s", session_id, post_id)
            return None
        try:
            return await self.record_payment(
                post_id,
                amount_cents=amount_cents or 0,
                method="CARD",
                duration_days=duration_days,
                actor=actor,
                auto_publish=True,
                external_reference=session_id,
                notes="checkout.session.completed",
            )
        except DuplicateReferenceError:
            # A concurrent delivery of the same session committed first.
            logger.info("checkout session already processed session_id=%s post_id=%s", session_id, post_id)
            return None

    async def update(
        self,
        post_id: str,
        attributes: dict[str, Any],
        *,
        actor: Actor,
        owner: Any | None = None,
    ) -> dict[str, Any]:
        """Replace the business attributes of a post.

        Status and the publication window are left as they are. When ``owner``
        is given the post must belong to it.
        """
        post = await self.repository.get_post(post_id)
        _check_owner(post, owner)
        normalized = validate_post_attributes(attributes)
        updated = await self.repository.update_post_attributes(post_id, attributes=normalized, changed_at=self.clock())
        logger.info("post updated id=%s actor=%s", post_id, actor.actor_id)
        return updated

    async def delete(self, post_id: str, *, actor: Actor, owner: Any | None = None) -> None:
        post = await self.repository.get_post(post_id)
        _check_owner(post, owner)
        await self.repository.delete_post(post_id)
        logger.info("post deleted id=%s status=%s actor=%s", post_id, post["status"], actor.actor_id)

    async def expire(self, now: datetime | None = None, *, batch_size: int = 1000) -> list[str]:
        """Expire every published post whose window ended at or before ``now``.

        Due posts are read ``batch_size`` at a time until a short batch shows
        the backlog is drained.
        """
        current = now or self.clock()
        batch_size = max(1, batch_size)
        expired: list[str] = []
        while True:
            due = await self.repository.list_due_for_expiry(now=current, limit=batch_size)
            moved = 0
            for post in due:
                updated = await self.repository.transition_post(
                    post["id"],
                    status="EXPIRED",
                    published_at=None,
                    published_until=None,
                    expected_status="PUBLISHED",
                    changed_at=current,
                    history={"actor_type": "system", "actor_id": None, "reason": "publication period ended"},
                )
                if updated is not None:
                    expired.append(post["id"])
                    moved += 1
            if len(due) < batch_size or moved == 0:
                break
        if expired:
            logger.info("expired posts count=%s now=%s", len(expired), current.isoformat())
        return expired

    async def payment_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "total_count": 0,
            "completed_count": 0,
            "pending_count": 0,
            "refunded_count": 0,
            "total_revenue_cents": 0,
            "pending_amount_cents": 0,
            "refunded_amount_cents": 0,
            "by_method": {},
        }
        for bucket in await self.repository.summarize_payments():
            count = int(bucket["count"])
            amount = int(bucket["amount_cents"])
            stats["total_count"] += count
            if bucket["status"] == "COMPLETED":
                stats["completed_count"] += count
                stats["total_revenue_cents"] += amount
                stats["by_method"][bucket["method"]] = stats["by_method"].get(bucket["method"], 0) + amount
            elif bucket["status"] == "PENDING":
                stats["pending_count"] += count
                stats["pending_amount_cents"] += amount
            elif bucket["status"] == "REFUNDED":
                stats["refunded_count"] += count
                stats["refunded_amount_cents"] += amount
        return stats

    async def _publish(self, post_id: str, *, duration_days: int, actor: Actor, reason: str) -> dict[str, Any]:
        now = self.clock()
        post = await self.repository.transition_post(
            post_id,
            status="PUBLISHED",
            published_at=now,
            published_until=now + timedelta(days=validate_duration_days(duration_days)),
            expected_status=None,
            changed_at=now,
            history={"actor_type": actor.actor_type, "actor_id": actor.actor_id, "reason": reason},
        )
        if post is None:
            raise NotFoundError("post not found")
        logger.info("post published id=%s until=%s", post_id, post["published_until"])
        return post

    async def _pay_and_publish(self, record: dict[str, Any], *, actor: Actor, reason: str) -> PaymentOutcome:
        now = self.clock()
        payment, post = await self.repository.record_payment_and_publish(
            record,
            published_at=now,
            published_until=now + timedelta(days=record["duration_days"]),
            changed_at=now,
            history={"actor_type": actor.actor_type, "actor_id": actor.actor_id, "reason": reason},
        )
        logger.info("post published id=%s until=%s payment=%s", post["id"], post["published_until"], payment["id"])
        return PaymentOutcome(payment=payment, post=post, published=True)

    def _payment_record(
        self,
        *,
        post_id: str,
        amount_cents: int,
        method: str,
        duration_days: int,
        status: str,
        auto_publish: bool,
        paid_at: datetime | None,
        notes: str | None,
        external_reference: str | None,
        recorded_by: str | None,
        created_at: datetime,
    ) -> dict[str, Any]:
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"unknown payment method: {method}")
        return {
            "post_id": post_id,
            "amount_cents": validate_amount_cents(amount_cents),
            "currency": self.currency,
            "method": method,
            "status": status,
            "duration_days": validate_duration_days(duration_days),
            "auto_publish": auto_publish,
            "paid_at": paid_at,
            "notes": notes,
            "external_reference": external_reference,
            "recorded_by": recorded_by,
            "created_at": created_at,
        }


def _owner_parts(owner: Any) -> tuple[str, str]:
    if hasattr(owner, "model_dump"):
        owner = owner.model_dump()
    if not isinstance(owner, dict):
        raise ValidationError("owner must be a user or an organization")
    kind = owner.get("kind")
    owner_id = owner.get("id")
    if kind not in OWNER_KINDS:
        raise ValidationError("owner must be a user or an organization")
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise ValidationError("owner id must be a non-empty string")
    return kind, owner_id.strip()


def _check_owner(post: dict[str, Any], owner: Any | None) -> None:
    if owner is None:
        return
    kind, owner_id = _owner_parts(owner)
    if post["owner"] != {"kind": kind, "id": owner_id}:
        raise PermissionError("post belongs to another owner")


def _format_amount(amount_cents: int) -> str:
    return f"{amount_cents / 100:.2f}"
