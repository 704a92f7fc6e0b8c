"""Composer - drafts a message and drives one relay call per submit.

On submit the Composer creates a thread if needed (and navigates to it),
shows the user's message optimistically, starts the view's stream session,
then relays the server's SSE records to the view through the channel.
When the relay ends, or fails, the view is always told the stream is over.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from uuid import uuid4

from coach.client.api import ChatApiClient, StreamUnavailableError
from coach.client.channel import (
    APPEND,
    BEGIN,
    CTA,
    END,
    STRUCTURED_DATA,
    USER_MESSAGE,
    StreamChannel,
    StreamSignal,
)
from coach.client.queries import THREADS_KEY, QueryClient, messages_key

logger = logging.getLogger(__name__)

# A freshly navigated view may not have subscribed yet
DELIVERY_DEFER_SECONDS = 0.12
DELIVERY_ATTEMPTS = 3


class Composer:
    """Draft + send for one chat screen."""

    def __init__(
        self,
        api: ChatApiClient,
        channel: StreamChannel,
        queries: QueryClient,
        thread_id: str | None,
        navigate: Callable[[str], None],
        defer_seconds: float = DELIVERY_DEFER_SECONDS,
        delivery_attempts: int = DELIVERY_ATTEMPTS,
    ) -> None:
        self.api = api
        self.channel = channel
        self.queries = queries
        self.thread_id = thread_id
        self.navigate = navigate
        self.draft = ""
        self.sending = False
        self.pending_agent_type: str | None = None
        self.failed_message: str | None = None
        self.last_error: str | None = None
        self._defer_seconds = defer_seconds
        self._delivery_attempts = delivery_attempts

    @property
    def can_submit(self) -> bool:
        return bool(self.draft.strip()) and not self.sending

    async def submit(self) -> bool:
        """Send the draft. Returns True if the relay ran to its end record."""
        if not self.can_submit:
            return False
        message, self.draft = self.draft, ""
        agent_type, self.pending_agent_type = self.pending_agent_type, None
        return await self._send(message, agent_type)

    async def compose_and_send(self, preset: str, agent_type: str | None = None) -> bool:
        """Quick action: send preset text, routed to a specific agent.

        The draft is left alone, and nothing changes while a reply is streaming.
        """
        if self.sending or not preset.strip():
            return False
        return await self._send(preset, agent_type)

    async def send_message(self, text: str) -> bool:
        """Send text on behalf of a card action."""
        if self.sending or not text.strip():
            return False
        return await self._send(text, None)

    async def _send(self, message: str, agent_type: str | None) -> bool:
        self.sending = True
        self.failed_message = None
        self.last_error = None
        session = uuid4().hex
        target = self.thread_id

        try:
            navigated = False
            if not target:
                target = await self.api.create_thread()
                await self.queries.invalidate(THREADS_KEY, exact=True)
                self.thread_id = target
                self.navigate(f"/{target}")
                navigated = True

            await self._deliver_start(message, session, deferred=navigated)

            saw_end = False
            async for record in self.api.respond(target, message, agent_type):
                if record.type == "delta":
                    self._publish(APPEND, session, text=record.content)
                elif record.type == "cta":
                    self._publish(CTA, session, text=record.label)
                elif record.type == "structured_data":
                    self._publish(STRUCTURED_DATA, session, data=record.data)
                elif record.type == "error":
                    logger.warning("Coach reply failed on thread %s: %s", target, record.message)
                    self.last_error = record.message
                elif record.type == "end":
                    saw_end = True
                    self._publish(END, session)
                    await self.queries.invalidate(messages_key(target))
                    await self.queries.invalidate(THREADS_KEY, exact=True)

            if not saw_end:
                raise StreamUnavailableError(200, "Stream closed without an end record")
            return True

        except Exception as e:
            logger.error("Chat stream error: %s", e)
            self.failed_message = message
            self.last_error = str(e) or type(e).__name__
            self._publish(END, session)
            return False
        finally:
            self.sending = False

    async def retry_failed(self) -> bool:
        """Resend the message whose stream failed or stalled."""
        if not self.failed_message:
            return False
        return await self.send_message(self.failed_message)

    def _publish(self, kind: str, session: str, text: str = "", data: object = None) -> bool:
        return self.channel.publish(StreamSignal(kind, text=text, data=data, session=session))

    async def _deliver_start(self, message: str, session: str, deferred: bool) -> bool:
        """Show the echo and start the session, waiting briefly for a view."""
        if deferred:
            await asyncio.sleep(self._defer_seconds)
        for attempt in range(self._delivery_attempts):
            if self._publish(USER_MESSAGE, session, text=message):
                self._publish(BEGIN, session)
                return True
            if attempt + 1 < self._delivery_attempts:
                await asyncio.sleep(self._defer_seconds)
        logger.warning("No conversation view subscribed; reply will not be shown live")
        return False
