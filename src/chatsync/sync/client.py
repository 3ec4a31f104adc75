"""Async HTTP client for the chat service API."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from chatsync.config.schema import ServerConfig
from chatsync.errors import (
    EndpointNotImplementedError,
    NetworkError,
    PayloadError,
    ServerError,
)

logger = logging.getLogger(__name__)

# Statuses that mean "this server has no such endpoint" for optional routes.
_MISSING_ENDPOINT = (404, 405, 501)


class ChatApiClient:
    """Async client for the chat REST API.

    Wraps :class:`httpx.AsyncClient` and translates transport failures and
    error statuses into the :mod:`chatsync.errors` taxonomy.  It does not
    retry; retry policy belongs to the caller.
    """

    def __init__(
        self,
        config: ServerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **config.headers,
        }
        if config.auth_token:
            headers["Authorization"] = f"Bearer {config.auth_token}"
        self._client = httpx.AsyncClient(
            base_url=config.api_base.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(config.request_timeout, connect=config.connect_timeout),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_info(self) -> dict[str, Any]:
        """``GET /info`` -> ``{sessionUuid, apiVersion}``."""
        data = await self._request("GET", "/info")
        if not isinstance(data, dict):
            raise PayloadError(f"GET /info returned {type(data).__name__}, expected object")
        return data

    async def get_messages(self, since: int | None = None) -> list[Any]:
        """Full message list, or only changes after *since* (epoch ms)."""
        params = None if since is None else {"since": since}
        return await self._request_list("/messages", params)

    async def get_participants(self, since: int | None = None) -> list[Any]:
        """Full participant list, or only changes after *since* (epoch ms)."""
        params = None if since is None else {"since": since}
        return await self._request_list("/participants", params)

    async def send_message(self, text: str) -> dict[str, Any]:
        """``POST /messages`` and return the confirmed message record."""
        data = await self._request("POST", "/messages", json={"text": text})
        if not isinstance(data, dict):
            raise PayloadError(f"POST /messages returned {type(data).__name__}, expected object")
        return data

    async def add_reaction(self, message_id: str, emoji: str) -> Any:
        """Register a reaction.  Raises EndpointNotImplementedError if unsupported."""
        path = f"/messages/{quote(message_id, safe='')}/reactions"
        return await self._optional_request("POST", path, json={"emoji": emoji})

    async def remove_reaction(self, message_id: str, emoji: str) -> Any:
        path = f"/messages/{quote(message_id, safe='')}/reactions/{quote(emoji, safe='')}"
        return await self._optional_request("DELETE", path)

    async def check_available(self) -> bool:
        """Return True if ``GET /info`` answers."""
        try:
            await self.get_info()
            return True
        except (NetworkError, ServerError, PayloadError) as exc:
            logger.warning("Server availability check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        logger.debug("API request: %s %s %s", method, path, kwargs.get("params") or "")
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        logger.debug("API response: %s %s - %d", method, path, response.status_code)

        if response.status_code == 501:
            raise EndpointNotImplementedError(501, f"{method} {path} not implemented")
        if response.is_error:
            raise ServerError(
                response.status_code,
                f"{method} {path} - HTTP {response.status_code}: {response.text[:200]}",
            )
        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as exc:
            raise PayloadError(f"{method} {path} returned invalid JSON") from exc

    async def _request_list(self, path: str, params: dict[str, Any] | None) -> list[Any]:
        data = await self._request("GET", path, params=params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise PayloadError(f"GET {path} returned {type(data).__name__}, expected array")
        return data

    async def _optional_request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            return await self._request(method, path, **kwargs)
        except ServerError as exc:
            if exc.status_code in _MISSING_ENDPOINT:
                raise EndpointNotImplementedError(exc.status_code, str(exc)) from exc
            raise

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Shut down the underlying HTTP transport."""
        await self._client.aclose()
