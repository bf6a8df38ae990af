from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from castline.apps.api.main import create_app
from castline.core.config import get_settings
from castline.tests.utils.factories import NOTIFICATION_PAYLOAD, seed_users


AUTH = {"Authorization": "Bearer test-admin-key"}


@pytest.mark.asyncio
async def test_event_stream_ends_with_done_for_finished_job(monkeypatch) -> None:
    monkeypatch.setenv("PROGRESS_STREAM_INTERVAL_S", "0.05")
    get_settings.cache_clear()
    await seed_users(2)
    body = {"channel": "notification", "payload": NOTIFICATION_PAYLOAD, "target_all_users": True, "batch_delay_ms": 0}

    events: list[tuple[str, dict]] = []
    async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
        created = await client.post("/v1/admin/broadcasts", json=body, headers=AUTH)
        job_id = created.json()["data"]["job"]["id"]
        async with client.stream("GET", f"/v1/admin/broadcasts/{job_id}/events", headers=AUTH) as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            current_event = "message"
            async for line in response.aiter_lines():
                if line.startswith("event:"):
                    current_event = line.split(":", 1)[1].strip()
                elif line.startswith("data:"):
                    events.append((current_event, json.loads(line.removeprefix("data:").strip())))
                    if current_event == "done":
                        break

    assert [name for name, _ in events] == ["progress", "done"]
    assert events[0][1]["status"] == "completed"
    assert events[0][1]["success_count"] == 2


@pytest.mark.asyncio
async def test_event_stream_for_unknown_job_is_not_found() -> None:
    async with AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test") as client:
        response = await client.get("/v1/admin/broadcasts/missing/events", headers=AUTH)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
