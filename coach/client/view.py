"""Conversation view - the persisted thread plus the live reply.

Holds what a chat screen shows for one thread: the persisted messages
(from a retried, 404-aware query), the optimistic echo of the message the
user just sent, and the transient stream session. Receives Composer
signals through a StreamChannel subscription that lives exactly as long
as the view is mounted.

The optimistic echo is cleared by the first message refetch that settles
while no stream is in flight after the echo was set (or after the stream
ended). Until then the echo stays, so the user's message never blinks out
between `end` and the refetch.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from coach.chat.cards import HabitInfo, HabitReviewCard
from coach.client.api import ApiError, ChatApiClient
from coach.client.channel import (
    APPEND,
    BEGIN,
    CTA,
    END,
    STRUCTURED_DATA,
    USER_MESSAGE,
    StreamChannel,
    StreamSignal,
    Subscription,
)
from coach.client.queries import Query, QueryClient, QueryStatus, messages_key, retry_unless_not_found
from coach.client.render import (
    CardView,
    HabitReviewState,
    RenderedMessage,
    TextBubble,
    card_id_for,
    render_card,
    render_message,
)
from coach.client.scroll import ScrollFollower
from coach.client.stream import Phase, StreamSession
from coach.config import ClientSettings

logger = logging.getLogger(__name__)

CHAT_HOME = "/chat"
OPTIMIZATION_APPLIED = "Optimization applied to My Focus."


@dataclass(frozen=True)
class LiveReply:
    """The in-flight assistant bubble."""

    phase: Phase
    text: str
    cta: str | None
    card: CardView | None

    @property
    def thinking(self) -> bool:
        return self.phase is Phase.THINKING


class ConversationView:
    """State for one mounted thread view."""

    def __init__(
        self,
        api: ChatApiClient,
        channel: StreamChannel,
        queries: QueryClient,
        thread_id: str | None,
        navigate: Callable[[str], None],
        settings: ClientSettings | None = None,
        scroll_to_bottom: Callable[[], None] | None = None,
    ) -> None:
        settings = settings or ClientSettings()
        self.api = api
        self.channel = channel
        self.queries = queries
        self.thread_id = thread_id
        self.navigate = navigate
        self.session = StreamSession()
        self.optimistic_message: str | None = None
        self.review = HabitReviewState()
        self.follower = ScrollFollower()
        self._scroll_to_bottom = scroll_to_bottom
        self._subscription: Subscription | None = None
        self._echo_awaits_refetch = False
        self.messages_query: Query | None = None
        if thread_id:
            self.messages_query = Query(
                messages_key(thread_id),
                fetcher=lambda: api.get_messages(thread_id),
                retry=retry_unless_not_found(settings.message_retries),
                retry_delay=settings.retry_delay,
                on_settled=self._on_messages_settled,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mount(self) -> None:
        if self._subscription is None:
            self._subscription = self.channel.subscribe(self.handle_signal)
        if self.messages_query:
            self.queries.mount(self.messages_query)

    def unmount(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self.messages_query:
            self.queries.unmount(self.messages_query)

    @property
    def mounted(self) -> bool:
        return self._subscription is not None

    async def refresh(self) -> list[dict[str, Any]]:
        """Fetch persisted messages (with retry). Returns what is shown."""
        if self.messages_query:
            await self.messages_query.fetch()
        return self.messages

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[dict[str, Any]]:
        if self.messages_query is None or self.messages_query.data is None:
            return []
        return self.messages_query.data

    @property
    def load_failed(self) -> bool:
        return self.messages_query is not None and self.messages_query.status is QueryStatus.ERROR

    @property
    def phase(self) -> Phase:
        return self.session.phase

    def _on_messages_settled(self, query: Query) -> None:
        if query.status is QueryStatus.ERROR:
            if isinstance(query.error, ApiError) and query.error.not_found:
                logger.info("Thread %s is gone (404); leaving it", self.thread_id)
                self.navigate(CHAT_HOME)
            return
        if not self.session.active:
            self._echo_awaits_refetch = False
        self._reconcile_optimistic()
        self._content_changed()

    def _reconcile_optimistic(self) -> None:
        if (
            self.optimistic_message is not None
            and not self.session.active
            and not self._echo_awaits_refetch
            and self.messages
        ):
            self.optimistic_message = None

    def _content_changed(self) -> None:
        if self._scroll_to_bottom and self.follower.should_follow():
            self._scroll_to_bottom()

    def on_scroll(self, scroll_top: float, scroll_height: float, client_height: float) -> None:
        self.follower.on_scroll(scroll_top, scroll_height, client_height)

    # ------------------------------------------------------------------
    # Channel signals
    # ------------------------------------------------------------------

    def add_user_message(self, text: str) -> None:
        """Show the just-sent message before the server confirms it."""
        self.optimistic_message = text
        self._echo_awaits_refetch = True

    def handle_signal(self, signal: StreamSignal) -> None:
        if signal.kind == USER_MESSAGE:
            self.add_user_message(signal.text)
        elif signal.kind == BEGIN:
            self.session.begin(signal.session)
        elif signal.kind == APPEND:
            if not self.session.append(signal.text, signal.session):
                return
        elif signal.kind == CTA:
            if not self.session.set_cta(signal.text, signal.session):
                return
        elif signal.kind == STRUCTURED_DATA:
            if not self.session.set_structured_data(signal.data, signal.session):
                return
        elif signal.kind == END:
            if not self.session.end(signal.session):
                return
            self._echo_awaits_refetch = True
        else:
            logger.debug("Unknown stream signal: %s", signal.kind)
            return
        self._content_changed()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def rendered_messages(self) -> list[RenderedMessage]:
        return [render_message(m, self.review) for m in self.messages]

    def optimistic_bubble(self) -> TextBubble | None:
        if self.optimistic_message is None:
            return None
        return TextBubble("user", self.optimistic_message)

    def live_reply(self) -> LiveReply | None:
        if not self.session.active:
            return None
        card = None
        if self.session.payload is not None:
            card = render_card(
                self.session.payload,
                card_id_for(getattr(self.session.payload, "type", ""), None),
                self.review,
            )
        return LiveReply(self.session.phase, self.session.text, self.session.cta, card)

    # ------------------------------------------------------------------
    # Card actions
    # ------------------------------------------------------------------

    async def complete_habit(self, habit: HabitInfo, index: int) -> bool:
        """Mark a habit from a review card done. Returns False on failure."""
        if not habit.id:
            return False
        try:
            await self.api.complete_habit(habit.id)
        except Exception as e:
            logger.error("Failed to mark habit %s complete: %s", habit.id, e)
            return False
        self.review.mark_completed(habit, index)
        return True

    async def submit_habit_review(
        self,
        message_id: str | None,
        card: HabitReviewCard,
        send_message: Callable[[str], Awaitable[Any]],
    ) -> str:
        """Submit a review card: mark it done and send the summary message."""
        message = self.review.submit(card_id_for(card.type, message_id), card)
        await send_message(message)
        return message

    async def apply_optimization(self) -> bool:
        """Record that an optimization card was applied, then refetch."""
        if not self.thread_id:
            return False
        try:
            await self.api.post_system_message(self.thread_id, OPTIMIZATION_APPLIED)
        except Exception as e:
            logger.error("Failed to record optimization on %s: %s", self.thread_id, e)
            return False
        await self.refresh()
        return True
