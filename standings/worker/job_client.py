from __future__ import annotations

from typing import Any

import httpx

from standings.services.errors import LockConflictError


class JobClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key}
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def claim_job(self, lease_seconds: int = 60) -> dict[str, Any] | None:
        async with self._client() as client:
            response = await client.post("/jobs/claim", json={"lease_seconds": lease_seconds}, headers=self.headers)
            if response.status_code == httpx.codes.NO_CONTENT:
                return None
            if response.status_code == httpx.codes.CONFLICT:
                raise LockConflictError(response.json().get("detail", "job is not claimable"))
            response.raise_for_status()
            return response.json()

    async def submit_result(
        self,
        job_id: str,
        *,
        entries: list[dict[str, Any]],
        warnings: list[dict[str, Any]],
        expected_version: int,
    ) -> dict[str, Any]:
        payload = {"entries": entries, "warnings": warnings, "expected_version": expected_version}
        async with self._client() as client:
            response = await client.post(f"/jobs/{job_id}/result", json=payload, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def report_failure(self, job_id: str, *, error: str, fatal: bool) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"/jobs/{job_id}/failure",
                json={"error": error[:2000], "fatal": fatal},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def reap_expired_jobs(self, limit: int = 100) -> int:
        async with self._client() as client:
            response = await client.post("/jobs/reap-expired", json={"limit": limit}, headers=self.headers)
            response.raise_for_status()
            return int(response.json().get("reclaimed", 0))

    async def run_retention(self) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post("/admin/retention/run", headers=self.headers)
            response.raise_for_status()
            return response.json()
