"""HTTP client for the LockGate REST API."""

import logging
from typing import Any, Optional
from uuid import UUID

import httpx

from lockgate.client.errors import (
    LockAuthError,
    LockClientError,
    LockServiceUnavailable,
    LockTransportError,
)
from lockgate.models import AcquireResult, HeartbeatResult, LockInfo

logger = logging.getLogger("lockgate.client.api")


class LockApiClient:
    """
    Thin async wrapper over ``/v1/locks``.

    Usage:
        async with LockApiClient("https://locks.example", tenant_id, api_key="...") as api:
            result = await api.acquire("order-1", "alice", "session_1", "Alice")

    Pass ``transport`` (for example ``httpx.ASGITransport``) to talk to an
    in-process app.
    """

    def __init__(
        self,
        base_url: str,
        tenant_id: UUID | str | None = None,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if tenant_id is not None:
            headers["X-Tenant-ID"] = str(tenant_id)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "LockApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Lock operations
    # ------------------------------------------------------------------

    async def acquire(
        self,
        record_id: str,
        holder_id: str,
        session_id: str,
        display_name: str,
        record_type: str | None = None,
    ) -> AcquireResult:
        data = await self._request(
            "POST",
            "/v1/locks/acquire",
            json={
                "record_id": record_id,
                "record_type": record_type,
                "holder_id": holder_id,
                "session_id": session_id,
                "display_name": display_name,
            },
        )
        return AcquireResult.model_validate(data)

    async def renew(self, record_id: str, holder_id: str, session_id: str) -> bool:
        data = await self._request(
            "POST",
            "/v1/locks/renew",
            json={"record_id": record_id, "holder_id": holder_id, "session_id": session_id},
        )
        return bool(data["renewed"])

    async def release(self, record_id: str, holder_id: str, session_id: str) -> bool:
        data = await self._request(
            "POST",
            "/v1/locks/release",
            json={"record_id": record_id, "holder_id": holder_id, "session_id": session_id},
        )
        return bool(data["released"])

    async def heartbeat(self, holder_id: str, session_id: str, record_ids: list[str]) -> HeartbeatResult:
        data = await self._request(
            "POST",
            "/v1/locks/heartbeat",
            json={"holder_id": holder_id, "session_id": session_id, "record_ids": record_ids},
        )
        return HeartbeatResult.model_validate(data)

    async def get_lock(self, record_id: str) -> LockInfo | None:
        data = await self._request("GET", f"/v1/locks/{record_id}")
        return LockInfo.model_validate(data) if data else None

    async def query(self, record_ids: list[str]) -> dict[str, LockInfo | None]:
        data = await self._request("POST", "/v1/locks/query", json={"record_ids": record_ids})
        return {
            record_id: LockInfo.model_validate(info) if info else None
            for record_id, info in data["locks"].items()
        }

    async def list_locks(self, holder_id: str | None = None) -> list[LockInfo]:
        params = {"holder_id": holder_id} if holder_id else None
        data = await self._request("GET", "/v1/locks", params=params)
        return [LockInfo.model_validate(info) for info in data["locks"]]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise LockTransportError(f"Lock service unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise LockAuthError(self._detail(response), status_code=response.status_code)
        if response.status_code >= 500:
            raise LockServiceUnavailable(self._detail(response), status_code=response.status_code)
        if response.status_code >= 400:
            raise LockClientError(self._detail(response), status_code=response.status_code)
        return response.json()

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return str(response.json().get("detail", response.text))
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
