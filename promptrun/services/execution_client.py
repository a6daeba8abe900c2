"""HTTP transport to the execution service."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx

from promptrun.config import Settings, get_settings
from promptrun.core.error_contract import extract_error_message
from promptrun.core.exceptions import AuthenticationError, TransportError
from promptrun.core.logging import get_logger

logger = get_logger(__name__)


class ExecutionClient:
    """Client for the run and cancel endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.execution_base_url.rstrip("/")
        self.timeout = httpx.Timeout(
            self.settings.read_timeout_seconds,
            connect=self.settings.connect_timeout_seconds,
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.settings.publishable_key:
                headers["apikey"] = self.settings.publishable_key

            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _auth_headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @asynccontextmanager
    async def open_stream(self, payload: Dict[str, Any], token: str) -> AsyncIterator[httpx.Response]:
        """POST a run request and yield the streaming response.

        A non-2xx answer is read in full and raised as TransportError before
        the caller sees any stream. The response is closed on exit, including
        when the consuming task is cancelled.
        """
        request = self.client.build_request(
            "POST",
            self.settings.run_path,
            json=payload,
            headers={**self._auth_headers(token), "Accept": "text/event-stream"},
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"Execution service unreachable: {e}") from e

        try:
            if response.is_error:
                body = await response.aread()
                message, code = extract_error_message(body)
                logger.warning(
                    "Run request rejected",
                    data={"status_code": response.status_code, "error_code": code, "error": message},
                )
                if response.status_code == 401 and code is None:
                    raise AuthenticationError(message)
                raise TransportError(message, status_code=response.status_code, code=code)
            yield response
        finally:
            await response.aclose()

    async def cancel_response(self, response_id: str, token: str) -> str:
        """Ask the server to stop a response.

        Returns the reported status, ``cancelled`` or ``completed``.
        """
        try:
            response = await self.client.post(
                self.settings.cancel_path,
                json={"response_id": response_id},
                headers=self._auth_headers(token),
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Cancel request failed: {e}") from e

        if response.is_error:
            message, code = extract_error_message(response.text, default="Cancel request failed")
            raise TransportError(message, status_code=response.status_code, code=code)

        try:
            data = response.json()
        except ValueError:
            data = {}
        status = data.get("status") if isinstance(data, dict) else None
        return status if status in ("cancelled", "completed") else "cancelled"
