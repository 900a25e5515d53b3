from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from engagement.worker import main as worker_main
from engagement.worker.config import Settings
from engagement.worker.dispatch_client import DispatchClient


def _worker_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "api_base_url": "http://api.test",
        "cron_secret": "secret",
        "tick_interval_seconds": 0,
        "maintenance_interval_seconds": 300,
        "otel_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


class RecordingClient:
    def __init__(self, failures: int = 0) -> None:
        self.calls: list[str] = []
        self.failures = failures

    async def dispatch(self) -> dict[str, Any]:
        self.calls.append("dispatch")
        if self.failures:
            self.failures -= 1
            raise httpx.ConnectError("api unreachable")
        return {"claimed": 2, "succeeded": 2, "failed": 0, "elapsedMs": 12}

    async def run_maintenance(self) -> dict[str, Any]:
        self.calls.append("maintenance")
        return {"requeued": 1, "purged": 0}


def test_dispatch_client_sends_bearer_secret() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"claimed": 0, "succeeded": 0, "failed": 0, "elapsedMs": 1})

    client = DispatchClient("http://api.test/", "secret", transport=httpx.MockTransport(handler))
    summary = asyncio.run(client.dispatch())
    asyncio.run(client.run_maintenance())

    assert summary["claimed"] == 0
    assert [request.url.path for request in seen] == ["/dispatch", "/dispatch/maintenance"]
    assert all(request.method == "POST" for request in seen)
    assert all(request.headers["Authorization"] == "Bearer secret" for request in seen)


def test_dispatch_client_raises_on_rejected_secret() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"detail": "invalid"}))
    client = DispatchClient("http://api.test", "wrong", transport=transport)
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.dispatch())


def test_run_tick_runs_maintenance_on_interval() -> None:
    client = RecordingClient()
    settings = _worker_settings()

    async def scenario() -> None:
        mark = await worker_main.run_tick(client, settings, last_maintenance_at=float("-inf"))
        second = await worker_main.run_tick(client, settings, last_maintenance_at=mark)
        assert second == mark

    asyncio.run(scenario())
    assert client.calls == ["maintenance", "dispatch", "dispatch"]


def test_run_worker_survives_failed_tick(monkeypatch) -> None:
    client = RecordingClient(failures=1)
    monkeypatch.setattr(worker_main, "get_settings", lambda: _worker_settings(maintenance_interval_seconds=10_000))
    monkeypatch.setattr(worker_main, "DispatchClient", lambda *args, **kwargs: client)

    asyncio.run(worker_main.run_worker(max_ticks=2))

    assert client.calls == ["maintenance", "dispatch", "maintenance", "dispatch"]
