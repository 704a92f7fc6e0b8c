"""Thread Titler - names a thread after its first exchange.

Listens to: turn_completed

Threads start untitled. After a turn, if the thread still has no title,
asks a small model for a short one. Without credentials, or when the call
fails, falls back to the user's first message.
"""

from __future__ import annotations

import logging
from uuid import UUID

import httpx

from coach.chat.threads import ThreadManager
from coach.config import Settings
from coach.events import TURN_COMPLETED, Event, EventBus
from coach.handlers import build_anthropic_headers

logger = logging.getLogger(__name__)

FALLBACK_TITLE_CHARS = 60

_TITLE_PROMPT = """Write a title for a coaching conversation that starts with this message.

Message:
{message}

Reply with the title only: 3 to 6 words, no quotes, no trailing punctuation."""


def fallback_title(message: str) -> str:
    """First line of the message, cut at FALLBACK_TITLE_CHARS."""
    first_line = message.strip().splitlines()[0] if message.strip() else ""
    if len(first_line) <= FALLBACK_TITLE_CHARS:
        return first_line
    return first_line[: FALLBACK_TITLE_CHARS - 3].rstrip() + "..."


class ThreadTitler:
    """Sets a title on untitled threads after a completed turn."""

    def __init__(
        self,
        threads: ThreadManager,
        settings: Settings,
        bus: EventBus,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._threads = threads
        self._settings = settings
        self._http = http_client
        bus.on(TURN_COMPLETED, self.handle)

    async def handle(self, event: Event) -> None:
        """Handle turn_completed - title the thread if it has none yet."""
        if not event.thread_id:
            return
        thread_id = UUID(event.thread_id)

        thread = await self._threads.get(thread_id)
        if thread is None or thread.title or thread.deleted_at is not None:
            return

        message = event.data.get("user_message") or ""
        if not message.strip():
            return

        title = await self._generate_title(message) or fallback_title(message)
        await self._threads.set_title(thread_id, title)
        logger.info("Thread %s titled: %s", thread_id, title)

    async def _generate_title(self, message: str) -> str | None:
        """Ask the title model for a short title. None on any failure."""
        if not self._http:
            return None
        if not (self._settings.anthropic_api_key or self._settings.anthropic_auth_token):
            return None

        try:
            response = await self._http.post(
                f"{self._settings.api_base_url}/v1/messages",
                json={
                    "model": self._settings.title_model,
                    "max_tokens": 30,
                    "messages": [{"role": "user", "content": _TITLE_PROMPT.format(message=message[:2000])}],
                },
                headers=build_anthropic_headers(self._settings),
                timeout=30,
            )
        except httpx.HTTPError as e:
            logger.warning("Title generation failed: %s", e)
            return None

        if response.status_code != 200:
            logger.warning("Title LLM call failed: %d", response.status_code)
            return None

        blocks = response.json().get("content") or [{}]
        title = (blocks[0].get("text") or "").strip().strip('"').rstrip(".")
        return title[:255] or None
