"""Remote persistence API used by the sync coordinator.

Remote writes must be idempotent: the same (collection, record_id) may be
delivered more than once after a crash or a cancelled drain, and repeating
the write must not create a second logical record. Both implementations
below are keyed upserts, so redelivery simply overwrites.

Failures are reported as TransientError (timeouts, connectivity, 5xx, 429)
or PermanentError (validation/conflict rejections).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote
import logging

import httpx

from ..errors import PermanentError, TransientError
from .queue import Operation, QueueItem

logger = logging.getLogger(__name__)

# Statuses worth retrying later: request timeout, too early, rate limited
RETRYABLE_STATUS_CODES = {408, 425, 429}


class RemotePersistence(ABC):
    """Remote store contract: idempotent upsert and delete by record ID."""

    @abstractmethod
    async def upsert(self, collection: str, record_id: str, payload: Dict[str, Any]) -> None:
        """Create or replace a record.

        Raises:
            TransientError: If the write may succeed later
            PermanentError: If the remote rejected the record
        """

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        """Delete a record; deleting a missing record succeeds."""

    async def deliver(self, item: QueueItem) -> None:
        """Apply one queued mutation."""
        if item.operation is Operation.DELETE:
            await self.delete(item.collection, item.record_id)
        else:
            await self.upsert(item.collection, item.record_id, item.payload)

    async def close(self) -> None:
        """Release network resources."""


class InMemoryRemoteStore(RemotePersistence):
    """Idempotent in-memory remote store.

    Used for dry runs and tests. Every call is recorded in `calls`, so
    redeliveries are visible even though `records` holds one entry per key.
    """

    def __init__(self):
        self.records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str]] = []

    async def upsert(self, collection: str, record_id: str, payload: Dict[str, Any]) -> None:
        self.calls.append(('upsert', collection, record_id))
        self.records[(collection, record_id)] = dict(payload)

    async def delete(self, collection: str, record_id: str) -> None:
        self.calls.append(('delete', collection, record_id))
        self.records.pop((collection, record_id), None)

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Get a stored record."""
        return self.records.get((collection, record_id))

    def count(self, collection: Optional[str] = None) -> int:
        """Count stored records, optionally for one collection."""
        if collection is None:
            return len(self.records)
        return sum(1 for (c, _) in self.records if c == collection)

    def __repr__(self) -> str:
        """String representation."""
        return f"InMemoryRemoteStore(records={len(self.records)}, calls={len(self.calls)})"


class HttpRemoteStore(RemotePersistence):
    """REST remote store.

    Records are written with PUT {base_url}/{collection}/{record_id} and
    removed with DELETE on the same URL. PUT to a fixed URL is idempotent,
    which gives the at-least-once queue exactly-once effects.

    Usage:
        remote = HttpRemoteStore('https://attendance.example.edu/api', api_key='...')
        await remote.upsert('attendance_records', record_id, payload)
        await remote.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """Initialize HTTP remote store.

        Args:
            base_url: API root URL
            api_key: Bearer token (optional)
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        if not base_url:
            raise ValueError("HttpRemoteStore requires a base_url")

        headers = {'Accept': 'application/json'}
        if api_key:
            headers['Authorization'] = f'Bearer {api_key}'

        self.base_url = base_url.rstrip('/')
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport
        )

    @classmethod
    def from_config(cls, config: Dict[str, Dict[str, Any]]) -> 'HttpRemoteStore':
        """Build a remote store from the 'remote' config section."""
        remote = config['remote']
        return cls(
            base_url=remote['base_url'],
            api_key=remote.get('api_key') or None,
            timeout=float(remote.get('timeout_seconds', 10.0))
        )

    @staticmethod
    def _path(collection: str, record_id: str) -> str:
        return f"/{quote(collection, safe='')}/{quote(record_id, safe='')}"

    async def upsert(self, collection: str, record_id: str, payload: Dict[str, Any]) -> None:
        response = await self._request('PUT', self._path(collection, record_id), json=payload)
        self._raise_for_status(response, allow_missing=False)

    async def delete(self, collection: str, record_id: str) -> None:
        response = await self._request('DELETE', self._path(collection, record_id))
        self._raise_for_status(response, allow_missing=True)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e.__class__.__name__}: {e}") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, allow_missing: bool) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if allow_missing and status == 404:
            return

        request = response.request
        message = f"{request.method} {request.url.path} -> {status}: {response.text[:200]}"

        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            raise TransientError(message, status_code=status)
        raise PermanentError(message, status_code=status)

    async def close(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        """String representation."""
        return f"HttpRemoteStore({self.base_url})"
