"""HTTP client for the agent server's REST and event-stream endpoints."""

from __future__ import annotations

import contextlib
import json
import logging
from typing import Any, AsyncIterator, List
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError

from canvaslink.errors import InvalidServerURL, ResponseDecodeError, TransportError, status_error
from canvaslink.schema import (
    HealthInfo,
    PromptRequest,
    ProvidersCatalog,
    ServerMessage,
    SessionInfo,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(30.0)
# The event stream is long-lived: no read timeout, only connect/write bounds.
STREAM_TIMEOUT = httpx.Timeout(connect=10.0, read=None, write=10.0, pool=10.0)
_BODY_LOG_MAX = 2000


def _truncate(value: str, limit: int = _BODY_LOG_MAX) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}..."


def _segment(value: str) -> str:
    return quote(value, safe="")


class ServerApi:
    """Thin async wrapper over the server's HTTP surface.

    Every non-2xx response raises :class:`~canvaslink.errors.HttpStatusError`
    carrying the status code and raw body; network failures raise
    :class:`~canvaslink.errors.TransportError`. Nothing here retries.
    """

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        *,
        health_timeout: float = 5.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._owns_client = http_client is None
        self._health_timeout = health_timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    @base_url.setter
    def base_url(self, value: str) -> None:
        self._base_url = value.rstrip("/")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def url(self, path: str) -> str:
        try:
            parsed = httpx.URL(self._base_url)
            port = parsed.port
        except (httpx.InvalidURL, ValueError) as exc:
            raise InvalidServerURL(self._base_url) from exc
        if parsed.scheme not in {"http", "https"} or not parsed.host:
            raise InvalidServerURL(self._base_url)
        if port is not None and not 0 < port <= 65535:
            raise InvalidServerURL(self._base_url)
        return f"{self._base_url}/{path.lstrip('/')}"

    async def health(self) -> HealthInfo:
        response = await self._request("GET", "/global/health", timeout=httpx.Timeout(self._health_timeout))
        return self._decode(response, HealthInfo, "GET", "/global/health")

    async def list_sessions(self) -> List[SessionInfo]:
        response = await self._request("GET", "/session")
        sessions = self._decode(response, List[SessionInfo], "GET", "/session")
        logger.debug("Listed %d sessions", len(sessions))
        return sessions

    async def get_session(self, session_id: str) -> SessionInfo:
        path = f"/session/{_segment(session_id)}"
        response = await self._request("GET", path)
        return self._decode(response, SessionInfo, "GET", path)

    async def create_session(self, title: str | None = None) -> SessionInfo:
        response = await self._request("POST", "/session", body={"title": title} if title else {})
        session = self._decode(response, SessionInfo, "POST", "/session")
        logger.info("Created session: %s", session.id)
        return session

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/session/{_segment(session_id)}")
        logger.info("Deleted session: %s", session_id)

    async def rename_session(self, session_id: str, title: str) -> None:
        await self._request("PATCH", f"/session/{_segment(session_id)}", body={"title": title})
        logger.info("Renamed session %s to: %s", session_id, title)

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        *,
        model: str | None = None,
        directory: str | None = None,
    ) -> None:
        body = PromptRequest.from_text(text, model).to_wire()
        params = {"directory": directory} if directory else None
        await self._request(
            "POST",
            f"/session/{_segment(session_id)}/prompt_async",
            body=body,
            params=params,
        )
        logger.info("Sent prompt to session %s: %s", session_id, _truncate(text, 50))

    async def abort_session(self, session_id: str) -> None:
        await self._request("POST", f"/session/{_segment(session_id)}/abort", body={})
        logger.info("Aborted session: %s", session_id)

    async def fork_session(self, session_id: str, message_id: str) -> str:
        path = f"/session/{_segment(session_id)}/fork"
        response = await self._request("POST", path, body={"messageID": message_id})
        forked = self._decode(response, SessionInfo, "POST", path)
        logger.info("Forked session %s to %s", session_id, forked.id)
        return forked.id

    async def get_messages(self, session_id: str) -> List[ServerMessage]:
        path = f"/session/{_segment(session_id)}/message"
        response = await self._request("GET", path)
        messages = self._decode(response, List[ServerMessage], "GET", path)
        logger.debug("Fetched %d messages for session %s", len(messages), session_id)
        return messages

    async def respond_to_permission(self, session_id: str, permission_id: str, approved: bool) -> None:
        await self._request(
            "POST",
            f"/session/{_segment(session_id)}/permissions/{_segment(permission_id)}",
            body={"approved": approved},
        )
        logger.info("Responded to permission %s: %s", permission_id, "approved" if approved else "denied")

    async def get_providers(self) -> ProvidersCatalog:
        response = await self._request("GET", "/config/providers")
        catalog = self._decode(response, ProvidersCatalog, "GET", "/config/providers")
        logger.debug("Fetched %d providers", len(catalog.providers))
        return catalog

    @contextlib.asynccontextmanager
    async def stream_events(self) -> AsyncIterator[httpx.Response]:
        """Open ``GET /global/event``; the caller reads lines from the response.

        httpx errors raised while the caller iterates are converted into
        :class:`TransportError` as well.
        """

        url = self.url("/global/event")
        logger.info("Connecting to SSE stream at %s", url)
        try:
            async with self._client.stream(
                "GET",
                url,
                headers={"Accept": "text/event-stream"},
                timeout=STREAM_TIMEOUT,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise status_error(response.status_code, "GET", "/global/event", response.text)
                yield response
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__, cause=exc) from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> httpx.Response:
        url = self.url(path)
        promote = "/prompt_async" in path
        _log_request(method, url, body, promote=promote)
        kwargs: dict[str, Any] = {"params": params}
        if body is not None:
            kwargs["json"] = body
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.request(
                method,
                url,
                headers={"Accept": "application/json"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            logger.warning("HTTP %s %s failed: %s", method, path, exc)
            raise TransportError(str(exc) or type(exc).__name__, cause=exc) from exc
        _log_response(method, url, response, promote=promote)
        if not response.is_success:
            raise status_error(response.status_code, method, path, response.text)
        return response

    @staticmethod
    def _decode(response: httpx.Response, model_type: Any, method: str, path: str) -> Any:
        try:
            return TypeAdapter(model_type).validate_json(response.content)
        except ValidationError as exc:
            raise ResponseDecodeError(method, path, str(exc)) from exc


def _body_text(payload: Any) -> str:
    if payload is None:
        return "<empty>"
    try:
        return _truncate(json.dumps(payload, sort_keys=True))
    except (TypeError, ValueError):
        return "<unserializable>"


def _log_request(method: str, url: str, payload: Any, *, promote: bool) -> None:
    level = logging.INFO if promote else logging.DEBUG
    logger.log(level, "HTTP Request | method=%s | url=%s | body=%s", method, url, _body_text(payload))


def _log_response(method: str, url: str, response: httpx.Response, *, promote: bool) -> None:
    level = logging.INFO if promote or not response.is_success else logging.DEBUG
    if not logger.isEnabledFor(level):
        return
    logger.log(
        level,
        "HTTP Response | method=%s | url=%s | status=%s | body=%s",
        method,
        url,
        response.status_code,
        _truncate(response.text) or "<empty>",
    )
