"""Tests for the event bus and the thread titler handler."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from coach.chat.schemas import ThreadInput
from coach.events import TURN_COMPLETED, Event, EventBus
from coach.handlers.thread_titler import FALLBACK_TITLE_CHARS, ThreadTitler, fallback_title

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    event_type: str = "test_event",
    user_id: str = "user-1",
    data: dict | None = None,
    thread_id: str | None = None,
) -> Event:
    return Event(type=event_type, user_id=user_id, data=data or {}, thread_id=thread_id)


def _mock_settings(**overrides) -> MagicMock:
    """MagicMock Settings to avoid pydantic validation."""
    s = MagicMock()
    s.title_model = "claude-haiku-4-5-20251001"
    s.anthropic_api_key = "sk-ant-test-key"
    s.anthropic_auth_token = ""
    s.api_base_url = "https://api.anthropic.com"
    for k, v in overrides.items():
        setattr(s, k, v)
    return s


def _llm_client(status_code: int = 200, text: str = "Morning Run Routine") -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"content": [{"type": "text", "text": text}]})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ===========================================================================
# EventBus
# ===========================================================================


class TestEventBus:
    async def test_emit_handler_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert len(received) == 1
            assert received[0].user_id == "user-1"
        finally:
            await bus.stop()

    async def test_handler_error_doesnt_block_others(self):
        bus = EventBus()
        received: list[str] = []

        async def bad_handler(event: Event) -> None:
            raise ValueError("boom")

        async def good_handler(event: Event) -> None:
            received.append("ok")

        bus.on("test_event", bad_handler)
        bus.on("test_event", good_handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert received == ["ok", "ok"]
        finally:
            await bus.stop()

    async def test_db_persister_sees_every_event(self):
        bus = EventBus()
        persister = AsyncMock()
        bus.set_db_persister(persister)
        await bus.start()
        try:
            await bus.emit(_make_event("a"))
            await bus.emit(_make_event("b"))
            await asyncio.sleep(0.1)
        finally:
            await bus.stop()
        assert [c.args[0].type for c in persister.await_args_list] == ["a", "b"]

    async def test_persister_failure_still_dispatches(self):
        bus = EventBus()
        bus.set_db_persister(AsyncMock(side_effect=RuntimeError("db down")))
        handler = AsyncMock()
        handler.__qualname__ = "handler"
        bus.on("test_event", handler)
        await bus.start()
        try:
            await bus.emit(_make_event())
            await asyncio.sleep(0.1)
        finally:
            await bus.stop()
        handler.assert_awaited_once()

    async def test_stop_drains_queue(self):
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.on("test_event", handler)
        # Never started: stop() still delivers what was queued
        await bus.emit(_make_event())
        await bus.emit(_make_event())
        assert bus.pending == 2
        await bus.stop()
        assert len(received) == 2
        assert bus.pending == 0

    async def test_queue_full_drops_event(self):
        bus = EventBus(max_queue=1)
        await bus.emit(_make_event())
        await bus.emit(_make_event())
        assert bus.pending == 1


# ===========================================================================
# ThreadTitler
# ===========================================================================


class TestFallbackTitle:
    def test_short_message_kept(self):
        assert fallback_title("Help me sleep better") == "Help me sleep better"

    def test_first_line_only(self):
        assert fallback_title("Sleep\nand more details") == "Sleep"

    def test_long_message_truncated(self):
        title = fallback_title("word " * 40)
        assert len(title) <= FALLBACK_TITLE_CHARS
        assert title.endswith("...")

    def test_blank(self):
        assert fallback_title("   ") == ""


class TestThreadTitler:
    async def test_titles_untitled_thread_with_llm(self, threads):
        thread = await threads.create("user-1")
        http = _llm_client(text='"Morning Run Routine."')
        titler = ThreadTitler(threads, _mock_settings(), EventBus(), http)

        await titler.handle(
            _make_event(TURN_COMPLETED, thread_id=str(thread.id), data={"user_message": "I want to run"})
        )
        await http.aclose()

        assert (await threads.get(thread.id)).title == "Morning Run Routine"

    async def test_falls_back_without_credentials(self, threads):
        thread = await threads.create("user-1")
        settings = _mock_settings(anthropic_api_key="", anthropic_auth_token="")
        titler = ThreadTitler(threads, settings, EventBus(), _llm_client())

        await titler.handle(
            _make_event(TURN_COMPLETED, thread_id=str(thread.id), data={"user_message": "Help me sleep better"})
        )

        assert (await threads.get(thread.id)).title == "Help me sleep better"

    async def test_falls_back_on_llm_error(self, threads):
        thread = await threads.create("user-1")
        titler = ThreadTitler(threads, _mock_settings(), EventBus(), _llm_client(status_code=500))

        await titler.handle(
            _make_event(TURN_COMPLETED, thread_id=str(thread.id), data={"user_message": "Read more books"})
        )

        assert (await threads.get(thread.id)).title == "Read more books"

    async def test_keeps_existing_title(self, threads):
        thread = await threads.create("user-1", ThreadInput(title="Mine"))
        titler = ThreadTitler(threads, _mock_settings(), EventBus(), _llm_client())

        await titler.handle(
            _make_event(TURN_COMPLETED, thread_id=str(thread.id), data={"user_message": "anything"})
        )

        assert (await threads.get(thread.id)).title == "Mine"

    async def test_skips_deleted_thread(self, threads):
        thread = await threads.create("user-1")
        await threads.soft_delete(thread.id, "user-1")
        titler = ThreadTitler(threads, _mock_settings(), EventBus(), _llm_client())

        await titler.handle(
            _make_event(TURN_COMPLETED, thread_id=str(thread.id), data={"user_message": "anything"})
        )

        assert (await threads.get(thread.id)).title is None

    async def test_registered_on_bus(self, threads):
        thread = await threads.create("user-1")
        bus = EventBus()
        ThreadTitler(threads, _mock_settings(anthropic_api_key=""), bus, None)

        await bus.emit(
            _make_event(TURN_COMPLETED, thread_id=str(thread.id), data={"user_message": "Drink water"})
        )
        await bus.stop()

        assert (await threads.get(thread.id)).title == "Drink water"
