"""Transport that opens the run event stream against the execution backend."""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

import httpx

from batchprompt.schemas import RunRequest

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:3000"
RUN_ENDPOINT = "/api/jobs/run"

# Connect/write timeouts only; the stream itself stays open as long as the run lasts
DEFAULT_CONNECT_TIMEOUT = 10.0


class TransportError(Exception):
    """Raised when the event stream cannot be opened or is aborted."""

    pass


class Transport(Protocol):
    """Opens a byte stream of run events for a submission."""

    def open(self, request: RunRequest) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """Async context manager yielding the chunk iterator; exiting it closes the stream."""
        ...


class HttpTransport:
    """Streams run events from the backend's HTTP endpoint with httpx."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the transport.

        Args:
            base_url: Base URL of the execution backend
            connect_timeout: Seconds allowed to connect and send the request
            client: Optional preconfigured client (not closed by the transport)
        """
        self.base_url = base_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self._client = client

    @asynccontextmanager
    async def open(self, request: RunRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        url = f"{self.base_url}{RUN_ENDPOINT}"
        body = request.model_dump(mode="json", by_alias=True, exclude_none=True)
        timeout = httpx.Timeout(self.connect_timeout, read=None)

        client = self._client or httpx.AsyncClient(timeout=timeout)
        try:
            logger.info(f"Opening run stream: {url} ({len(request.project_paths)} projects)")
            async with client.stream("POST", url, json=body, timeout=timeout) as response:
                if not response.is_success:
                    raise TransportError(f"Failed to start job: HTTP {response.status_code}")
                yield _iter_chunks(response)
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e
        finally:
            if self._client is None:
                await client.aclose()


async def _iter_chunks(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        raise TransportError(f"Stream aborted: {e}") from e
