"""HTTP client for the external record sink."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from .const import DEFAULT_REQUEST_TIMEOUT

_LOGGER = logging.getLogger(__name__)


class SinkDeliveryError(Exception):
    """Exception for failed deliveries (timeouts, transport and HTTP errors)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        """Initialize delivery error."""
        super().__init__(message)
        self.status = status


class SinkClient:
    """Client posting JSON records to the sink endpoint."""

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession | None = None,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize sink client.

        A session passed in stays owned by the caller; otherwise one is
        created on first use and closed by ``async_close``.
        """
        self._url = url
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self.requests_sent = 0

    @property
    def url(self) -> str:
        """Get the sink URL."""
        return self._url

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def async_post(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Post *payload* to the sink and return its (possibly empty) JSON reply."""
        session = self._get_session()
        self.requests_sent += 1

        try:
            async with asyncio.timeout(self._request_timeout):
                async with session.post(
                    self._url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                ) as response:
                    return await self._handle_response(response)

        except asyncio.TimeoutError as err:
            _LOGGER.error("Timeout sending record to sink")
            raise SinkDeliveryError("Connection timeout") from err
        except aiohttp.ClientError as err:
            _LOGGER.error("Client error sending record to sink: %s", err)
            raise SinkDeliveryError(f"Connection error: {err}") from err

    async def _handle_response(self, response: aiohttp.ClientResponse) -> dict[str, Any]:
        """Handle HTTP response from the sink."""
        if response.status != 200:
            raise SinkDeliveryError(f"HTTP {response.status}", response.status)

        text = await response.text()
        if not text:
            return {}

        # The sink may answer with plain text; only JSON objects are interpreted.
        try:
            response_data = json.loads(text)
        except json.JSONDecodeError:
            _LOGGER.debug("Non-JSON response from sink: %.80s", text)
            return {}

        if not isinstance(response_data, dict):
            return {}

        if response_data.get("action") == "frequency_updated":
            _LOGGER.debug("Sink updated frequency for an existing record")

        return response_data

    async def async_close(self) -> None:
        """Close the session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
