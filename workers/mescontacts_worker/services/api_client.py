from __future__ import annotations

from typing import Any

import httpx


class ListingApiClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def expire_posts(self, limit: int | None = None) -> dict[str, Any]:
        params = {"limit": limit} if limit else None
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/jobs/expire-posts",
                params=params,
                headers=self.headers,
            )
            response.raise_for_status()
            payload = response.json()
        return {
            "count": int(payload.get("count", 0)),
            "post_ids": list(payload.get("post_ids") or []),
        }
