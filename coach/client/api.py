"""HTTP client for the coach chat API.

Wraps the REST endpoints and the SSE relay. The bearer token comes from a
file-backed TokenStore; a missing token is not an error (the request goes
out unauthenticated and the server decides).
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx

from coach.config import ClientSettings

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-success response from the chat API."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message

    @property
    def not_found(self) -> bool:
        return self.status == 404


class StreamUnavailableError(ApiError):
    """The relay answered without an event stream to read."""


@dataclass(frozen=True)
class RelayRecord:
    """One decoded SSE record from /api/chat/respond."""

    type: str  # start, delta, cta, structured_data, error, end
    content: str = ""
    label: str = ""
    data: dict[str, Any] | None = None
    message: str = ""

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> RelayRecord | None:
        """Build a record, or None for shapes the client doesn't act on."""
        record_type = payload.get("type")
        if record_type == "delta" and isinstance(payload.get("content"), str):
            return cls(type="delta", content=payload["content"])
        if record_type == "cta" and isinstance(payload.get("label"), str):
            return cls(type="cta", label=payload["label"])
        if record_type == "structured_data" and isinstance(payload.get("data"), dict):
            return cls(type="structured_data", data=payload["data"])
        if record_type == "error":
            return cls(type="error", message=str(payload.get("message") or ""))
        if record_type in ("start", "end"):
            return cls(type=record_type)
        return None


class TokenStore:
    """Bearer token persisted in a single file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> str | None:
        try:
            token = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return token or None

    def save(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(token.strip() + "\n", encoding="utf-8")
        self.path.chmod(0o600)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or response.reason_phrase)
    return response.reason_phrase


class ChatApiClient:
    """Async client for /api/chat.

    Pass `transport` to route requests somewhere other than the network
    (an ASGI app or a mock in tests).
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        token_store: TokenStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or ClientSettings()
        self._tokens = token_store or TokenStore(self._settings.token_file)
        self._http = httpx.AsyncClient(
            base_url=self._settings.api_url,
            transport=transport,
            timeout=httpx.Timeout(connect=10, read=30, write=10, pool=10),
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> ChatApiClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def _headers(self) -> dict[str, str]:
        token = self._tokens.load()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        response = await self._http.request(method, url, headers=self._headers(), **kwargs)
        if response.status_code >= 400:
            raise ApiError(response.status_code, _error_message(response))
        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def create_thread(self, title: str | None = None) -> str:
        """Create a thread and return its id.

        Accepts either {"id": ...} or {"threadId": ...} from the server.
        """
        body = {"title": title} if title else {}
        data = await self._request("POST", "/api/chat/threads", json=body)
        thread_id = (data or {}).get("id") or (data or {}).get("threadId")
        if not thread_id:
            raise ApiError(500, "Thread created without an id")
        return str(thread_id)

    async def list_threads(self, limit: int | None = None) -> list[dict[str, Any]]:
        params = {"limit": limit} if limit else None
        return await self._request("GET", "/api/chat/threads", params=params) or []

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/api/chat/threads/{thread_id}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def get_messages(self, thread_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        params = {"limit": limit} if limit else None
        return await self._request("GET", f"/api/chat/threads/{thread_id}/messages", params=params) or []

    async def post_system_message(self, thread_id: str, content: str) -> dict[str, Any]:
        return await self._request(
            "POST", f"/api/chat/threads/{thread_id}/system-message", json={"content": content}
        )

    async def complete_habit(self, habit_id: str, completed_at: datetime | None = None) -> None:
        """Mark a habit done today (goal/habit service, outside the chat API)."""
        when = completed_at or datetime.now(UTC)
        await self._request(
            "POST",
            f"/api/goals/habits/{habit_id}/complete",
            json={"completedAt": when.isoformat()},
        )

    # ------------------------------------------------------------------
    # Streaming relay
    # ------------------------------------------------------------------

    async def respond(
        self,
        thread_id: str,
        content: str,
        requested_agent_type: str | None = None,
    ) -> AsyncIterator[RelayRecord]:
        """Send a user message and yield relay records as they arrive.

        Raises:
            StreamUnavailableError: the server refused or sent no event stream.
            httpx.ReadTimeout: no record within stream_idle_timeout seconds.
        """
        body: dict[str, Any] = {"threadId": thread_id, "content": content}
        if requested_agent_type:
            body["requestedAgentType"] = requested_agent_type

        timeout = httpx.Timeout(connect=10, read=self._settings.stream_idle_timeout, write=10, pool=10)
        headers = {**self._headers(), "Accept": "text/event-stream"}

        async with self._http.stream(
            "POST", "/api/chat/respond", json=body, headers=headers, timeout=timeout
        ) as response:
            if response.status_code != 200:
                await response.aread()
                raise StreamUnavailableError(response.status_code, _error_message(response))
            if not response.headers.get("content-type", "").startswith("text/event-stream"):
                raise StreamUnavailableError(response.status_code, "Response is not an event stream")

            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    payload = json.loads(line[5:].strip())
                except ValueError:
                    logger.debug("Skipping undecodable relay line: %.80s", line)
                    continue
                if not isinstance(payload, dict):
                    continue
                record = RelayRecord.from_json(payload)
                if record is not None:
                    yield record
