"""Terminal chat for the habit coach.

Reads lines from stdin and sends them through the same Composer and
ConversationView a graphical client would use, printing the coach's reply
as it streams.

Usage:
    COACH_CLIENT_API_URL=http://localhost:3000 python -m coach.terminal [thread-id]

Commands:
    /new            start a new thread on the next message
    /threads        list recent threads
    /open <id>      switch to a thread
    /delete         delete the current thread
    /review         quick action: review today's habits
    /suggest        quick action: suggest goals
    /optimize       quick action: prioritize and optimize
    /done <n>       mark habit n of the last review card complete
    /submit         submit the last review card
    /apply          apply the last optimization card
    /retry          resend the last failed message
    /token <value>  save a bearer token
    /quit
"""

from __future__ import annotations

import asyncio
import logging
import sys

from coach.chat.cards import HabitReviewCard
from coach.client.api import ChatApiClient, TokenStore
from coach.client.channel import APPEND, CTA, END, StreamChannel, StreamSignal
from coach.client.composer import Composer
from coach.client.queries import QueryClient
from coach.client.render import CardView, RenderedMessage
from coach.client.thread_list import ThreadList
from coach.client.view import CHAT_HOME, ConversationView
from coach.config import ClientSettings

logger = logging.getLogger(__name__)

QUICK_ACTIONS: dict[str, tuple[str, str]] = {
    "/review": ("Let's review my habits for today", "review_progress"),
    "/suggest": ("Can you suggest some goals for me?", "suggest_goals"),
    "/optimize": ("Help me prioritize and optimize my focus", "prioritize_optimize"),
}


def format_card(card: CardView) -> str:
    lines = [f"  [{card.title}]"]
    lines.extend(f"    {line}" for line in card.lines)
    return "\n".join(lines)


def format_message(message: RenderedMessage) -> str:
    parts = []
    if message.bubble:
        parts.append(f"{message.bubble.author}: {message.bubble.text}")
    if message.card:
        parts.append(format_card(message.card))
    return "\n".join(parts)


class TerminalChat:
    """One terminal session: a channel, a composer, and the current view."""

    def __init__(self, settings: ClientSettings, thread_id: str | None = None) -> None:
        self.settings = settings
        self.tokens = TokenStore(settings.token_file)
        self.api = ChatApiClient(settings, self.tokens)
        self.channel = StreamChannel()
        self.queries = QueryClient()
        self.view: ConversationView | None = None
        self.composer = Composer(self.api, self.channel, self.queries, thread_id, self.navigate)
        self.thread_list = ThreadList(self.api, self.queries, self.navigate)
        self.thread_list.mount()
        self._printer = self.channel.subscribe(self._print_signal)
        self._route: str | None = f"/{thread_id}" if thread_id else None

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def navigate(self, route: str) -> None:
        """Switch views; the view itself is (re)built by _sync_route()."""
        self._route = route

    async def _sync_route(self, replay: bool = True) -> None:
        route = self._route
        thread_id = route.strip("/") if route and route != CHAT_HOME else None
        if self.view is not None and self.view.thread_id == thread_id:
            return

        if self.view is not None:
            self.view.unmount()
        self.view = ConversationView(
            self.api, self.channel, self.queries, thread_id, self.navigate, self.settings
        )
        self.view.mount()
        self.composer.thread_id = thread_id
        if not thread_id:
            return

        await self.view.refresh()
        if self._route == CHAT_HOME:
            # The messages query 404'd and sent us home
            print("(thread not found)")
            await self._sync_route()
        elif replay:
            for rendered in self.view.rendered_messages():
                print(format_message(rendered))

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _print_signal(self, signal: StreamSignal) -> None:
        if signal.kind == APPEND:
            print(signal.text, end="", flush=True)
        elif signal.kind == CTA:
            print(f"\n  > {signal.text}", end="", flush=True)
        elif signal.kind == END:
            print()

    def _last_card(self, card_type: str) -> tuple[str | None, CardView] | None:
        if self.view is None:
            return None
        for rendered in reversed(self.view.rendered_messages()):
            if rendered.card and rendered.card.type == card_type:
                return rendered.id, rendered.card
        return None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send(self, text: str, agent_type: str | None = None) -> None:
        print("Coach: ", end="", flush=True)
        if agent_type:
            ok = await self.composer.compose_and_send(text, agent_type)
        else:
            ok = await self.composer.send_message(text)
        # A new thread was created and navigated to; the view was already live
        await self._sync_route(replay=False)
        if not ok:
            print(f"(reply failed: {self.composer.last_error}; /retry to resend)")
            return
        if self.view and self.view.messages:
            latest = self.view.rendered_messages()[-1]
            if latest.card:
                print(format_card(latest.card))

    async def handle_line(self, line: str) -> bool:
        """Handle one input line. Returns False to quit."""
        command, _, arg = line.partition(" ")
        arg = arg.strip()

        if command == "/quit":
            return False
        if command == "/new":
            self.navigate(CHAT_HOME)
            await self._sync_route()
            print("(new thread starts with your next message)")
        elif command == "/threads":
            if not self.thread_list.loaded:
                await self.thread_list.refresh()
            for entry in self.thread_list.entries(self.composer.thread_id):
                marker = "*" if entry.active else " "
                print(f" {marker} {entry.id}  {entry.title}  {entry.date}")
            if not self.thread_list.threads:
                print("(no threads yet)")
        elif command == "/open" and arg:
            self.navigate(f"/{arg}")
            await self._sync_route()
        elif command == "/delete" and self.composer.thread_id:
            if await self.thread_list.delete(self.composer.thread_id, self.composer.thread_id):
                print("(thread deleted)")
                await self._sync_route()
        elif command in QUICK_ACTIONS:
            preset, agent_type = QUICK_ACTIONS[command]
            print(f"You: {preset}")
            await self.send(preset, agent_type)
        elif command == "/done" and arg.isdigit():
            await self._complete_habit(int(arg) - 1)
        elif command == "/submit":
            await self._submit_review()
        elif command == "/apply":
            if self.view and await self.view.apply_optimization():
                print("(optimization applied)")
        elif command == "/retry":
            failed = self.composer.failed_message
            if failed:
                print(f"You: {failed}")
                await self.send(failed)
        elif command == "/token" and arg:
            self.tokens.save(arg)
            print("(token saved)")
        elif command.startswith("/"):
            print(__doc__.split("Commands:")[-1].rstrip())
        else:
            await self.send(line)
        return True

    async def _complete_habit(self, index: int) -> None:
        found = self._last_card("habit_review")
        if not found or self.view is None:
            print("(no habit review card)")
            return
        _, card_view = found
        card = card_view.card
        if not isinstance(card, HabitReviewCard) or not 0 <= index < len(card.habits):
            print("(no such habit)")
            return
        if await self.view.complete_habit(card.habits[index], index):
            print(f"(marked {card.habits[index].title} complete)")

    async def _submit_review(self) -> None:
        found = self._last_card("habit_review")
        if not found or self.view is None:
            print("(no habit review card)")
            return
        message_id, card_view = found
        if not isinstance(card_view.card, HabitReviewCard):
            return

        async def send(text: str) -> None:
            print(f"You: {text}")
            await self.send(text)

        await self.view.submit_habit_review(message_id, card_view.card, send)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        await self._sync_route()
        await self.thread_list.refresh()
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if not await self.handle_line(line):
                    break
            except Exception as e:
                logger.error("Command failed: %s", e)
                print(f"(error: {e})")

    async def close(self) -> None:
        self._printer.unsubscribe()
        self.thread_list.unmount()
        if self.view is not None:
            self.view.unmount()
        await self.api.close()


async def main() -> None:
    """Entry point."""
    settings = ClientSettings()
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    thread_id = sys.argv[1] if len(sys.argv) > 1 else None
    chat = TerminalChat(settings, thread_id)
    print(f"Habit coach at {settings.api_url}. /help for commands.")
    try:
        await chat.run()
    finally:
        await chat.close()


def run() -> None:
    """Console script entry."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
