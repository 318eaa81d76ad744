from __future__ import annotations

import asyncio
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from mescontacts_api.core.config import get_settings
from mescontacts_api.core.errors import DuplicateReferenceError, NotFoundError, RepositoryUnavailableError
from mescontacts_api.services.store import InMemoryRepository

_POST_COLUMNS = """
  id::text as id,
  owner_kind::text as owner_kind,
  owner_id,
  business_name,
  category,
  description,
  phone,
  email,
  website,
  address,
  city,
  province,
  postal_code,
  geo_longitude,
  geo_latitude,
  status::text as status,
  published_at,
  published_until,
  created_by,
  created_at,
  updated_at
"""

_PAYMENT_COLUMNS = """
  id::text as id,
  post_id::text as post_id,
  amount_cents,
  currency,
  method::text as method,
  status::text as status,
  duration_days,
  auto_publish,
  paid_at,
  notes,
  external_reference,
  recorded_by,
  created_at
"""

_PAYMENT_UPDATABLE_COLUMNS = {"status", "paid_at", "notes"}
_INVALID_ID_ERRORS = (pg_exc.InvalidTextRepresentationError, asyncpg.DataError)


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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
        geo = attributes.get("geo") or {}
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into posts (
                      owner_kind, owner_id, business_name, category, description, phone, email, website,
                      address, city, province, postal_code, geo_longitude, geo_latitude,
                      status, published_at, published_until, created_by, created_at, updated_at
                    )
                    values (
                      $1::owner_kind, $2, $3, $4, $5, $6, $7, $8,
                      $9, $10, $11, $12, $13, $14,
                      $15::post_status, $16, $17, $18, $19, $19
                    )
                    returning {_POST_COLUMNS}
                    """,
                    owner_kind,
                    owner_id,
                    attributes["business_name"],
                    attributes["category"],
                    attributes.get("description"),
                    attributes["phone"],
                    attributes["email"],
                    attributes.get("website"),
                    attributes["address"],
                    attributes["city"],
                    attributes["province"],
                    attributes.get("postal_code"),
                    geo.get("longitude"),
                    geo.get("latitude"),
                    status,
                    published_at,
                    published_until,
                    created_by,
                    created_at,
                )
                await self._insert_history(
                    conn,
                    post_id=row["id"],
                    previous_status=None,
                    new_status=status,
                    created_at=created_at,
                    history=history,
                )
                return self._post_row_to_dict(row)

    async def get_post(self, post_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_POST_COLUMNS} from posts where id = $1::uuid", post_id)
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("post not found") from exc
        if not row:
            raise NotFoundError("post not found")
        return self._post_row_to_dict(row)

    async def update_post_attributes(
        self,
        post_id: str,
        *,
        attributes: dict[str, Any],
        changed_at: datetime,
    ) -> dict[str, Any]:
        geo = attributes.get("geo") or {}
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update posts
                set
                  business_name = $2,
                  category = $3,
                  description = $4,
                  phone = $5,
                  email = $6,
                  website = $7,
                  address = $8,
                  city = $9,
                  province = $10,
                  postal_code = $11,
                  geo_longitude = $12,
                  geo_latitude = $13,
                  updated_at = $14
                where id = $1::uuid
                returning {_POST_COLUMNS}
                """,
                post_id,
                attributes["business_name"],
                attributes["category"],
                attributes.get("description"),
                attributes["phone"],
                attributes["email"],
                attributes.get("website"),
                attributes["address"],
                attributes["city"],
                attributes["province"],
                attributes.get("postal_code"),
                geo.get("longitude"),
                geo.get("latitude"),
                changed_at,
            )
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("post not found") from exc
        if not row:
            raise NotFoundError("post not found")
        return self._post_row_to_dict(row)

    async def delete_post(self, post_id: str) -> None:
        # payments and post_status_history rows go with the post (on delete cascade).
        pool = await self._get_pool()
        try:
            deleted = await pool.fetchval("delete from posts where id = $1::uuid returning id", post_id)
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("post not found") from exc
        if deleted is None:
            raise NotFoundError("post not found")

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
        clauses: list[str] = []
        params: list[Any] = []

        def add(clause: str, value: Any) -> None:
            params.append(value)
            clauses.append(clause.format(n=len(params)))

        if status:
            add("status = ${n}::post_status", status)
        if owner_kind:
            add("owner_kind = ${n}::owner_kind", owner_kind)
        if owner_id:
            add("owner_id = ${n}", owner_id)
        if category:
            add("category = ${n}", category)
        if province:
            add("province = ${n}", province)
        if city:
            add("city = ${n}", city)
        if q:
            add("(business_name ilike '%' || ${n} || '%' or coalesce(description, '') ilike '%' || ${n} || '%')", q)

        where = f"where {' and '.join(clauses)}" if clauses else ""
        params.extend([max(1, min(limit, 200)), max(0, offset)])
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_POST_COLUMNS}
            from posts
            {where}
            order by created_at desc
            limit ${len(params) - 1} offset ${len(params)}
            """,
            *params,
        )
        return [self._post_row_to_dict(row) for row in rows]

    async def list_due_for_expiry(self, *, now: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_POST_COLUMNS}
            from posts
            where status = 'PUBLISHED'
              and published_until is not null
              and published_until <= $1
            order by published_until asc
            limit $2
            """,
            now,
            max(1, limit),
        )
        return [self._post_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        "select status::text as status from posts where id = $1::uuid for update",
                        post_id,
                    )
                    if not current:
                        raise NotFoundError("post not found")
                    previous_status = str(current["status"])
                    if expected_status is not None and previous_status != expected_status:
                        return None

                    row = await conn.fetchrow(
                        f"""
                        update posts
                        set
                          status = $2::post_status,
                          published_at = coalesce($3, published_at),
                          published_until = $4,
                          updated_at = $5
                        where id = $1::uuid
                        returning {_POST_COLUMNS}
                        """,
                        post_id,
                        status,
                        published_at,
                        published_until,
                        changed_at,
                    )
                    await self._insert_history(
                        conn,
                        post_id=post_id,
                        previous_status=previous_status,
                        new_status=status,
                        created_at=changed_at,
                        history=history,
                    )
                    return self._post_row_to_dict(row)
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("post not found") from exc

    async def list_status_history(self, *, post_id: str, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select
                  id::text as id,
                  post_id::text as post_id,
                  previous_status::text as previous_status,
                  new_status::text as new_status,
                  actor_type::text as actor_type,
                  actor_id,
                  reason,
                  created_at
                from post_status_history
                where post_id = $1::uuid
                order by created_at desc
                limit $2 offset $3
                """,
                post_id,
                max(1, min(limit, 200)),
                max(0, offset),
            )
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("post not found") from exc
        return [dict(row) for row in rows]

    async def insert_payment(self, record: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._insert_payment_row(conn, record)

    async def record_payment_and_publish(
        self,
        record: dict[str, Any],
        *,
        published_at: datetime,
        published_until: datetime,
        changed_at: datetime,
        history: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Store a completed payment and publish its post in one transaction.

        Either both writes land or neither does, so a provider retry after a
        failure finds no payment under its reference and can try again.
        """
        post_id = record["post_id"]
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        "select status::text as status from posts where id = $1::uuid for update",
                        post_id,
                    )
                    if not current:
                        raise NotFoundError("post not found")

                    payment = await self._insert_payment_row(conn, record)
                    row = await conn.fetchrow(
                        f"""
                        update posts
                        set
                          status = 'PUBLISHED'::post_status,
                          published_at = $2,
                          published_until = $3,
                          updated_at = $4
                        where id = $1::uuid
                        returning {_POST_COLUMNS}
                        """,
                        post_id,
                        published_at,
                        published_until,
                        changed_at,
                    )
                    await self._insert_history(
                        conn,
                        post_id=post_id,
                        previous_status=str(current["status"]),
                        new_status="PUBLISHED",
                        created_at=changed_at,
                        history=history,
                    )
                    return payment, self._post_row_to_dict(row)
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("post not found") from exc

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_PAYMENT_COLUMNS} from payments where id = $1::uuid", payment_id)
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("payment not found") from exc
        if not row:
            raise NotFoundError("payment not found")
        return dict(row)

    async def find_payment_by_reference(self, external_reference: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_PAYMENT_COLUMNS}
            from payments
            where external_reference = $1
            order by created_at asc
            limit 1
            """,
            external_reference,
        )
        return dict(row) if row else None

    async def update_payment(
        self,
        payment_id: str,
        *,
        changes: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        unknown = set(changes) - _PAYMENT_UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported payment columns: {sorted(unknown)}")

        assignments: list[str] = []
        params: list[Any] = [payment_id]
        for column, value in changes.items():
            params.append(value)
            cast = "::payment_status" if column == "status" else ""
            assignments.append(f"{column} = ${len(params)}{cast}")

        guard = ""
        if expected_status is not None:
            params.append(expected_status)
            guard = f"and status = ${len(params)}::payment_status"

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    exists = await conn.fetchval("select 1 from payments where id = $1::uuid for update", payment_id)
                    if not exists:
                        raise NotFoundError("payment not found")
                    row = await conn.fetchrow(
                        f"""
                        update payments
                        set {', '.join(assignments)}
                        where id = $1::uuid {guard}
                        returning {_PAYMENT_COLUMNS}
                        """,
                        *params,
                    )
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("payment not found") from exc
        return dict(row) if row else None

    async def list_payments(
        self,
        *,
        post_id: str | None = None,
        status: str | None = None,
        method: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if post_id:
            params.append(post_id)
            clauses.append(f"post_id = ${len(params)}::uuid")
        if status:
            params.append(status)
            clauses.append(f"status = ${len(params)}::payment_status")
        if method:
            params.append(method)
            clauses.append(f"method = ${len(params)}::payment_method")

        where = f"where {' and '.join(clauses)}" if clauses else ""
        params.extend([max(1, min(limit, 200)), max(0, offset)])
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_PAYMENT_COLUMNS}
                from payments
                {where}
                order by created_at desc
                limit ${len(params) - 1} offset ${len(params)}
                """,
                *params,
            )
        except _INVALID_ID_ERRORS as exc:
            raise NotFoundError("post not found") from exc
        return [dict(row) for row in rows]

    async def summarize_payments(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              status::text as status,
              method::text as method,
              count(*)::int as count,
              coalesce(sum(amount_cents), 0)::bigint as amount_cents
            from payments
            group by status, method
            """
        )
        return [dict(row) for row in rows]

    async def _insert_payment_row(self, conn: asyncpg.Connection, record: dict[str, Any]) -> dict[str, Any]:
        try:
            row = await conn.fetchrow(
                f"""
                insert into payments (
                  post_id, amount_cents, currency, method, status, duration_days,
                  auto_publish, paid_at, notes, external_reference, recorded_by, created_at
                )
                values ($1::uuid, $2, $3, $4::payment_method, $5::payment_status, $6, $7, $8, $9, $10, $11, $12)
                returning {_PAYMENT_COLUMNS}
                """,
                record["post_id"],
                record["amount_cents"],
                record["currency"],
                record["method"],
                record["status"],
                record["duration_days"],
                record["auto_publish"],
                record.get("paid_at"),
                record.get("notes"),
                record.get("external_reference"),
                record.get("recorded_by"),
                record["created_at"],
            )
        except pg_exc.UniqueViolationError as exc:
            # payments_external_reference_key only covers non-null references.
            raise DuplicateReferenceError(f"payment reference already recorded: {record.get('external_reference')}") from exc
        except (pg_exc.ForeignKeyViolationError, *_INVALID_ID_ERRORS) as exc:
            raise NotFoundError("post not found") from exc
        return dict(row)

    async def _insert_history(
        self,
        conn: asyncpg.Connection,
        *,
        post_id: str,
        previous_status: str | None,
        new_status: str,
        created_at: datetime,
        history: dict[str, Any],
    ) -> None:
        await conn.execute(
            """
            insert into post_status_history (
              post_id, previous_status, new_status, actor_type, actor_id, reason, created_at
            )
            values ($1::uuid, $2::post_status, $3::post_status, $4::actor_type, $5, $6, $7)
            """,
            post_id,
            previous_status,
            new_status,
            history.get("actor_type", "system"),
            history.get("actor_id"),
            history.get("reason"),
            created_at,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("MC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=15,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc
            return self._pool

    @staticmethod
    def _post_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        geo = None
        if row["geo_longitude"] is not None and row["geo_latitude"] is not None:
            geo = {"longitude": row["geo_longitude"], "latitude": row["geo_latitude"]}
        return {
            "id": row["id"],
            "owner": {"kind": row["owner_kind"], "id": row["owner_id"]},
            "business_name": row["business_name"],
            "category": row["category"],
            "description": row["description"],
            "phone": row["phone"],
            "email": row["email"],
            "website": row["website"],
            "address": row["address"],
            "city": row["city"],
            "province": row["province"],
            "postal_code": row["postal_code"],
            "geo": geo,
            "status": row["status"],
            "published_at": row["published_at"],
            "published_until": row["published_until"],
            "created_by": row["created_by"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
