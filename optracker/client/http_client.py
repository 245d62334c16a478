"""
HTTP clients for the operations API.

``OperationsClient`` is blocking and built on requests; ``AsyncOperationsClient``
uses httpx. Error envelopes returned by the server are raised as the matching
``optracker.errors`` exception.
"""

import logging
import threading
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Tuple

import httpx
import requests

from optracker.client.poller import AsyncPoller, Poller, PollingConfig
from optracker.errors import error_from_envelope
from optracker.models.operation import OperationRecord, OperationState, Payload

logger = logging.getLogger(__name__)

Page = Tuple[List[OperationRecord], Optional[str]]


def _raise_for_error(response) -> None:
    if response.status_code < 400:
        return
    try:
        body = response.json()
    except ValueError:
        body = {"message": response.text}
    raise error_from_envelope(response.status_code, body)


def _list_params(state, kind, done, page_size, page_token) -> Dict[str, Any]:
    params = {
        "state": OperationState(state).value if state is not None else None,
        "kind": kind,
        "done": str(done).lower() if done is not None else None,
        "page_size": page_size,
        "page_token": page_token,
    }
    return {key: value for key, value in params.items() if value is not None}


def _parse_page(body: dict) -> Page:
    records = [OperationRecord.model_validate(item) for item in body.get("operations", [])]
    return records, body.get("next_page_token")


class OperationsClient:
    """Blocking client for the operations API.

    Args:
        server_url: Base URL of the server.
        api_prefix: API version prefix.
        timeout: Per-request timeout in seconds.
        session: requests-compatible session (``requests.Session`` by default).
    """

    def __init__(self, server_url: str = "http://localhost:8000", api_prefix: str = "/v1",
                 timeout: float = 5.0, session=None):
        self.server_url = server_url.rstrip("/")
        self.api_prefix = api_prefix
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.server_url}{self.api_prefix}{path}"

    def create(self, kind: str, metadata: Any = None, params: Optional[Dict[str, Any]] = None) -> OperationRecord:
        r = self.session.post(
            self._url("/operations"),
            json={"kind": kind, "metadata": metadata, "params": params},
            timeout=self.timeout,
        )
        _raise_for_error(r)
        return OperationRecord.model_validate(r.json())

    def get(self, operation_id: str) -> OperationRecord:
        r = self.session.get(self._url(f"/operations/{operation_id}"), timeout=self.timeout)
        _raise_for_error(r)
        return OperationRecord.model_validate(r.json())

    def list(self, state: Optional[OperationState] = None, kind: Optional[str] = None,
             done: Optional[bool] = None, page_size: Optional[int] = None,
             page_token: Optional[str] = None) -> Page:
        r = self.session.get(
            self._url("/operations"),
            params=_list_params(state, kind, done, page_size, page_token),
            timeout=self.timeout,
        )
        _raise_for_error(r)
        return _parse_page(r.json())

    def iter_operations(self, **filters) -> Iterator[OperationRecord]:
        """Walk every page of a listing."""
        page_token = None
        while True:
            records, page_token = self.list(page_token=page_token, **filters)
            yield from records
            if not page_token:
                return

    def cancel(self, operation_id: str) -> OperationRecord:
        r = self.session.post(self._url(f"/operations/{operation_id}:cancel"), timeout=self.timeout)
        _raise_for_error(r)
        return OperationRecord.model_validate(r.json())

    def delete(self, operation_id: str) -> None:
        r = self.session.delete(self._url(f"/operations/{operation_id}"), timeout=self.timeout)
        _raise_for_error(r)

    def wait(self, operation_id: str, config: Optional[PollingConfig] = None,
             cancel_event: Optional[threading.Event] = None,
             on_update: Optional[Callable[[OperationRecord], None]] = None) -> Payload:
        """Poll until the operation finishes; see :meth:`Poller.poll`."""
        poller = Poller(
            self.get,
            config=config,
            retry_on=(requests.ConnectionError, requests.Timeout),
        )
        return poller.poll(operation_id, cancel_event=cancel_event, on_update=on_update)

    def close(self) -> None:
        self.session.close()


class AsyncOperationsClient:
    """asyncio client for the operations API built on httpx.

    Pass ``transport=httpx.ASGITransport(app=app)`` to talk to an in-process app.
    """

    def __init__(self, server_url: str = "http://localhost:8000", api_prefix: str = "/v1",
                 timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_prefix = api_prefix
        self._client = httpx.AsyncClient(
            base_url=server_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def create(self, kind: str, metadata: Any = None, params: Optional[Dict[str, Any]] = None) -> OperationRecord:
        r = await self._client.post(
            f"{self.api_prefix}/operations",
            json={"kind": kind, "metadata": metadata, "params": params},
        )
        _raise_for_error(r)
        return OperationRecord.model_validate(r.json())

    async def get(self, operation_id: str) -> OperationRecord:
        r = await self._client.get(f"{self.api_prefix}/operations/{operation_id}")
        _raise_for_error(r)
        return OperationRecord.model_validate(r.json())

    async def list(self, state: Optional[OperationState] = None, kind: Optional[str] = None,
                   done: Optional[bool] = None, page_size: Optional[int] = None,
                   page_token: Optional[str] = None) -> Page:
        r = await self._client.get(
            f"{self.api_prefix}/operations",
            params=_list_params(state, kind, done, page_size, page_token),
        )
        _raise_for_error(r)
        return _parse_page(r.json())

    async def iter_operations(self, **filters) -> AsyncIterator[OperationRecord]:
        page_token = None
        while True:
            records, page_token = await self.list(page_token=page_token, **filters)
            for record in records:
                yield record
            if not page_token:
                return

    async def cancel(self, operation_id: str) -> OperationRecord:
        r = await self._client.post(f"{self.api_prefix}/operations/{operation_id}:cancel")
        _raise_for_error(r)
        return OperationRecord.model_validate(r.json())

    async def delete(self, operation_id: str) -> None:
        r = await self._client.delete(f"{self.api_prefix}/operations/{operation_id}")
        _raise_for_error(r)

    async def wait(self, operation_id: str, config: Optional[PollingConfig] = None,
                   on_update: Optional[Callable[[OperationRecord], None]] = None) -> Payload:
        poller = AsyncPoller(self.get, config=config, retry_on=(httpx.TransportError,))
        return await poller.poll(operation_id, on_update=on_update)

    async def aclose(self) -> None:
        await self._client.aclose()
