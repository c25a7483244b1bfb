"""Remote log store clients: in-process and HTTP implementations.

Both implementations speak the same async interface so the uploader,
sweeper and aggregation engine never know which one they talk to.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

import httpx

from src.partition_store import AccessDenied, PartitionStore

logger = logging.getLogger(__name__)

__all__ = [
    "AccessDenied",
    "RemoteStoreError",
    "RemoteStore",
    "MemoryRemoteStore",
    "HttpRemoteStore",
]

ACTOR_HEADER = "X-Actor-Id"


class RemoteStoreError(Exception):
    """Transport or server-side failure while talking to the remote store."""


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        return response.json().get("error", default)
    except ValueError:
        return response.text or default


@runtime_checkable
class RemoteStore(Protocol):
    async def push(self, caller: str, actor_id: str, session_id: str, record: dict) -> str: ...

    async def read_partition(self, caller: str, actor_id: str) -> dict: ...

    async def read_all(self, caller: str) -> dict: ...

    async def remove_session(self, caller: str, actor_id: str, session_id: str) -> bool: ...

    async def close(self) -> None: ...


class MemoryRemoteStore:
    """Async adapter over an in-process PartitionStore."""

    def __init__(self, partitions: Optional[PartitionStore] = None):
        self._partitions = partitions if partitions is not None else PartitionStore()

    @property
    def partitions(self) -> PartitionStore:
        return self._partitions

    async def push(self, caller, actor_id, session_id, record):
        return self._partitions.push(caller, actor_id, session_id, record)

    async def read_partition(self, caller, actor_id):
        return self._partitions.read_partition(caller, actor_id)

    async def read_all(self, caller):
        return self._partitions.read_all(caller)

    async def remove_session(self, caller, actor_id, session_id):
        return self._partitions.remove_session(caller, actor_id, session_id)

    async def close(self):
        pass


class HttpRemoteStore:
    """Client for the remote log store server (see src/server.py)."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def _request(self, method: str, path: str, caller: Optional[str], **kwargs) -> httpx.Response:
        headers = {ACTOR_HEADER: caller} if caller else {}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"{method} {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AccessDenied(_error_message(response, "access denied"))
        if response.status_code >= 400:
            raise RemoteStoreError(
                f"{method} {path} returned {response.status_code}: {response.text}"
            )
        return response

    async def push(self, caller, actor_id, session_id, record):
        response = await self._request(
            "POST", f"/logs/{actor_id}/{session_id}", caller, json=record
        )
        return response.json()["record_id"]

    async def read_partition(self, caller, actor_id):
        response = await self._request("GET", f"/logs/{actor_id}", caller)
        return response.json()

    async def read_all(self, caller):
        response = await self._request("GET", "/logs", caller)
        return response.json()

    async def remove_session(self, caller, actor_id, session_id):
        response = await self._request("DELETE", f"/logs/{actor_id}/{session_id}", caller)
        return bool(response.json().get("removed"))

    async def close(self):
        await self._client.aclose()
