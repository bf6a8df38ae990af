"""Polling client for the broadcast admin API.

``wait_for_jobs`` mirrors what the admin console does: poll every watched job
on a fixed interval while any of them is still live, and stop as soon as all
of them are terminal.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable

import httpx

from castline.core.config import get_settings


TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


class BroadcastClientError(Exception):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message


class BroadcastClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        if client is None:
            client = httpx.AsyncClient(base_url=base_url or "http://localhost:8000", timeout=timeout_s)
        client.headers.update(headers)
        self._client = client

    async def __aenter__(self) -> BroadcastClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, f"/v1/admin/broadcasts{path}", **kwargs)
        body = response.json()
        if response.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            raise BroadcastClientError(
                response.status_code,
                error.get("code", "UNKNOWN_ERROR"),
                error.get("message", response.text),
            )
        return body["data"]

    async def create(self, **payload: Any) -> dict[str, Any]:
        return await self._request("POST", "", json=payload)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/{job_id}")

    async def list_jobs(self, *, limit: int = 10, status: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if status:
            params["status"] = status
        data = await self._request("GET", "", params=params)
        return data["items"]

    async def get_progress(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/{job_id}/progress")

    async def list_failed_recipients(self, job_id: str, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/{job_id}/recipients",
            params={"status": "failed", "limit": limit, "offset": offset},
        )
        return data["items"]

    async def trigger(self, job_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/{job_id}/trigger")

    async def reprocess(self, job_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/{job_id}/reprocess")

    async def cancel(self, job_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/{job_id}/cancel")

    async def wait_for_jobs(
        self,
        job_ids: Iterable[str],
        *,
        interval_s: float | None = None,
        max_polls: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> dict[str, dict[str, Any]]:
        """Poll until every job is terminal and return the last progress per job."""
        interval = get_settings().progress_poll_interval_s if interval_s is None else interval_s
        watched = list(dict.fromkeys(job_ids))
        latest: dict[str, dict[str, Any]] = {}
        polls = 0
        while True:
            for job_id in watched:
                latest[job_id] = await self.get_progress(job_id)
            polls += 1
            if all(latest[job_id]["status"] in TERMINAL_STATUSES for job_id in watched):
                return latest
            if max_polls is not None and polls >= max_polls:
                return latest
            await sleep(interval)
