from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from mescontacts_api.core.errors import DuplicateReferenceError, NotFoundError


class InMemoryRepository:
    """Dict-backed store with the same async surface as PostgresRepository.

    Used for local development (``MC_STORAGE_BACKEND=memory``) and tests. Every
    method runs without yielding to the event loop, so each call is atomic.
    """

    def __init__(self) -> None:
        self.posts: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.status_history: list[dict[str, Any]] = []

    async def close(self) -> None:
        return None

    async def insert_post(
        self,
        *,
        owner_kind: str,
        owner_id: str,
        attributes: dict[str, Any],
        status: str,
        published_at: datetime | None,
        published_until: datetime | None,
        created_by: str | None,
        created_at: datetime,
        history: dict[str, Any],
    ) -> dict[str, Any]:
        post_id = str(uuid4())
        row = {
            "id": post_id,
            "owner": {"kind": owner_kind, "id": owner_id},
            **attributes,
            "status": status,
            "published_at": published_at,
            "published_until": published_until,
            "created_by": created_by,
            "created_at": created_at,
            "updated_at": created_at,
        }
        self.posts[post_id] = row
        self._append_history(post_id=post_id, new_status=status, created_at=created_at, **history)
        return copy.deepcopy(row)

    async def get_post(self, post_id: str) -> dict[str, Any]:
        row = self.posts.get(post_id)
        if row is None:
            raise NotFoundError("post not found")
        return copy.deepcopy(row)

    async def update_post_attributes(
        self,
        post_id: str,
        *,
        attributes: dict[str, Any],
        changed_at: datetime,
    ) -> dict[str, Any]:
        row = self.posts.get(post_id)
        if row is None:
            raise NotFoundError("post not found")
        row.update(attributes)
        row["updated_at"] = changed_at
        return copy.deepcopy(row)

    async def delete_post(self, post_id: str) -> None:
        if self.posts.pop(post_id, None) is None:
            raise NotFoundError("post not found")
        self.payments = {key: row for key, row in self.payments.items() if row["post_id"] != post_id}
        self.status_history = [row for row in self.status_history if row["post_id"] != post_id]

    async def list_posts(
        self,
        *,
        status: str | None = None,
        owner_kind: str | None = None,
        owner_id: str | None = None,
        category: str | None = None,
        province: str | None = None,
        city: str | None = None,
        q: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = list(self.posts.values())
        if status:
            rows = [row for row in rows if row["status"] == status]
        if owner_kind:
            rows = [row for row in rows if row["owner"]["kind"] == owner_kind]
        if owner_id:
            rows = [row for row in rows if row["owner"]["id"] == owner_id]
        if category:
            rows = [row for row in rows if row["category"] == category]
        if province:
            rows = [row for row in rows if row["province"] == province]
        if city:
            rows = [row for row in rows if row["city"] == city]
        if q:
            needle = q.casefold()
            rows = [
                row
                for row in rows
                if needle in row["business_name"].casefold() or needle in (row.get("description") or "").casefold()
            ]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return copy.deepcopy(rows[offset : offset + limit])

    async def list_due_for_expiry(self, *, now: datetime, limit: int) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.posts.values()
            if row["status"] == "PUBLISHED" and row["published_until"] is not None and row["published_until"] <= now
        ]
        rows.sort(key=lambda row: row["published_until"])
        return copy.deepcopy(rows[:limit])

    async def transition_post(
        self,
        post_id: str,
        *,
        status: str,
        published_at: datetime | None,
        published_until: datetime | None,
        expected_status: str | None,
        changed_at: datetime,
        history: dict[str, Any],
    ) -> dict[str, Any] | None:
        row = self.posts.get(post_id)
        if row is None:
            raise NotFoundError("post not found")
        if expected_status is not None and row["status"] != expected_status:
            return None

        previous_status = row["status"]
        row["status"] = status
        row["published_until"] = published_until
        if published_at is not None:
            row["published_at"] = published_at
        row["updated_at"] = changed_at
        self._append_history(
            post_id=post_id,
            previous_status=previous_status,
            new_status=status,
            created_at=changed_at,
            **history,
        )
        return copy.deepcopy(row)

    async def list_status_history(self, *, post_id: str, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        rows = [row for row in self.status_history if row["post_id"] == post_id]
        rows.reverse()
        return copy.deepcopy(rows[offset : offset + limit])

    async def insert_payment(self, record: dict[str, Any]) -> dict[str, Any]:
        self._check_reference(record.get("external_reference"))
        payment_id = str(uuid4())
        row = {"id": payment_id, **record}
        self.payments[payment_id] = row
        return copy.deepcopy(row)

    async def record_payment_and_publish(
        self,
        record: dict[str, Any],
        *,
        published_at: datetime,
        published_until: datetime,
        changed_at: datetime,
        history: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        self._check_reference(record.get("external_reference"))
        # The post moves first so a failed transition leaves no payment behind.
        post = await self.transition_post(
            record["post_id"],
            status="PUBLISHED",
            published_at=published_at,
            published_until=published_until,
            expected_status=None,
            changed_at=changed_at,
            history=history,
        )
        payment = await self.insert_payment(record)
        return payment, post

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        row = self.payments.get(payment_id)
        if row is None:
            raise NotFoundError("payment not found")
        return copy.deepcopy(row)

    async def find_payment_by_reference(self, external_reference: str) -> dict[str, Any] | None:
        for row in self.payments.values():
            if row.get("external_reference") == external_reference:
                return copy.deepcopy(row)
        return None

    async def update_payment(
        self,
        payment_id: str,
        *,
        changes: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        row = self.payments.get(payment_id)
        if row is None:
            raise NotFoundError("payment not found")
        if expected_status is not None and row["status"] != expected_status:
            return None
        row.update(changes)
        return copy.deepcopy(row)

    async def list_payments(
        self,
        *,
        post_id: str | None = None,
        status: str | None = None,
        method: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = list(self.payments.values())
        if post_id:
            rows = [row for row in rows if row["post_id"] == post_id]
        if status:
            rows = [row for row in rows if row["status"] == status]
        if method:
            rows = [row for row in rows if row["method"] == method]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return copy.deepcopy(rows[offset : offset + limit])

    async def summarize_payments(self) -> list[dict[str, Any]]:
        summary: dict[tuple[str, str], dict[str, Any]] = {}
        for row in self.payments.values():
            key = (row["status"], row["method"])
            bucket = summary.setdefault(key, {"status": row["status"], "method": row["method"], "count": 0, "amount_cents": 0})
            bucket["count"] += 1
            bucket["amount_cents"] += row["amount_cents"]
        return list(summary.values())

    def _check_reference(self, external_reference: str | None) -> None:
        if external_reference is None:
            return
        if any(row.get("external_reference") == external_reference for row in self.payments.values()):
            raise DuplicateReferenceError(f"payment reference already recorded: {external_reference}")

    def _append_history(
        self,
        *,
        post_id: str,
        new_status: str,
        created_at: datetime | None = None,
        previous_status: str | None = None,
        actor_type: str = "system",
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.status_history.append(
            {
                "id": str(uuid4()),
                "post_id": post_id,
                "previous_status": previous_status,
                "new_status": new_status,
                "actor_type": actor_type,
                "actor_id": actor_id,
                "reason": reason,
                "created_at": created_at or datetime.now(timezone.utc),
            }
        )
