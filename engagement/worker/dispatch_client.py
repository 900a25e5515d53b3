from __future__ import annotations

from typing import Any

import httpx


class DispatchClient:
    """Calls the scheduler entrypoints of the API with the cron bearer secret."""

    def __init__(
        self,
        base_url: str,
        cron_secret: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {cron_secret}"}
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def dispatch(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/dispatch", headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def run_maintenance(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/dispatch/maintenance", headers=self.headers)
            response.raise_for_status()
            return response.json()
