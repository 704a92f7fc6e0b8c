"""Tests for the Composer - submit guards, thread creation, relay, failures."""

import asyncio

import httpx
import pytest

from coach.client.channel import BEGIN, END, USER_MESSAGE, StreamChannel
from coach.client.composer import Composer
from coach.client.queries import THREADS_KEY, Query, QueryClient
from coach.client.stream import Phase
from coach.client.view import ConversationView


@pytest.fixture
def channel():
    return StreamChannel()


@pytest.fixture
def queries():
    return QueryClient()


@pytest.fixture
def routes() -> list[str]:
    return []


def _signals(channel) -> list:
    got = []
    channel.subscribe(got.append)
    return got


async def test_empty_draft_rejected(fake_api, channel, queries, routes):
    composer = Composer(fake_api, channel, queries, None, routes.append)
    for draft in ("", "   \n\t"):
        composer.draft = draft
        assert not composer.can_submit
        assert await composer.submit() is False
    assert fake_api.respond_calls == []


async def test_submit_while_sending_rejected(fake_api, channel, queries, routes):
    composer = Composer(fake_api, channel, queries, "t-1", routes.append)
    composer.draft = "Hello"
    composer.sending = True
    assert await composer.submit() is False
    assert composer.draft == "Hello"


async def test_concurrent_submit_rejected(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)
    _signals(channel)

    composer.draft = "first"
    first = asyncio.create_task(composer.submit())
    await asyncio.sleep(0)
    composer.draft = "second"
    assert await composer.submit() is False
    assert await first is True
    assert [c[1] for c in fake_api.respond_calls] == ["first"]


async def test_draft_cleared_and_signals_ordered(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)
    got = _signals(channel)

    composer.draft = "Hello"
    assert await composer.submit() is True

    assert composer.draft == ""
    assert composer.sending is False
    assert [s.kind for s in got] == [USER_MESSAGE, BEGIN, "append", "append", END]
    assert got[0].text == "Hello"
    assert len({s.session for s in got}) == 1
    assert routes == []


async def test_creates_thread_and_navigates(fake_api, channel, queries, routes):
    threads_fetches = []

    async def fetch_threads():
        threads_fetches.append(1)
        return []

    queries.mount(Query(THREADS_KEY, fetch_threads))
    composer = Composer(fake_api, channel, queries, None, routes.append, defer_seconds=0)
    _signals(channel)

    composer.draft = "Hello"
    assert await composer.submit() is True

    assert composer.thread_id == "t-1"
    assert routes == ["/t-1"]
    assert fake_api.respond_calls[0][0] == "t-1"
    # Once after creation, once after end
    assert len(threads_fetches) == 2


async def test_delivery_waits_for_view_to_mount(fake_api, channel, queries, routes, client_settings):
    views: list[ConversationView] = []

    def navigate(route):
        routes.append(route)

        def mount():
            view = ConversationView(fake_api, channel, queries, route.strip("/"), routes.append, client_settings)
            view.mount()
            views.append(view)

        asyncio.get_running_loop().call_later(0.03, mount)

    composer = Composer(fake_api, channel, queries, None, navigate, defer_seconds=0.02, delivery_attempts=5)
    composer.draft = "Hello"
    assert await composer.submit() is True

    view = views[0]
    assert [(m["role"], m["content"]) for m in view.messages] == [("user", "Hello"), ("assistant", "Hi there")]
    assert view.optimistic_message is None


async def test_delivery_gives_up_but_still_relays(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0, delivery_attempts=2)

    composer.draft = "Hello"
    assert await composer.submit() is True
    assert len(fake_api.respond_calls) == 1


async def test_agent_type_consumed_once(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)

    await composer.compose_and_send("Review my habits", "review_progress")
    await composer.send_message("And another")

    assert [c[2] for c in fake_api.respond_calls] == ["review_progress", None]


async def test_transport_failure_returns_view_to_idle(fake_api, channel, queries, routes, client_settings):
    thread_id = await fake_api.create_thread()
    fake_api.reply = [{"type": "start"}, {"type": "delta", "content": "Hi"}]
    fake_api.respond_error = httpx.ReadTimeout("stalled")
    view = ConversationView(fake_api, channel, queries, thread_id, routes.append, client_settings)
    view.mount()
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)

    composer.draft = "Hello"
    assert await composer.submit() is False

    assert view.phase is Phase.IDLE
    assert view.session.text == ""
    assert composer.failed_message == "Hello"
    assert "stalled" in composer.last_error
    assert composer.sending is False


async def test_stream_without_end_is_failure(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    fake_api.reply = [{"type": "start"}, {"type": "delta", "content": "Hi"}]
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)
    got = _signals(channel)

    composer.draft = "Hello"
    assert await composer.submit() is False
    assert got[-1].kind == END


async def test_retry_failed(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    fake_api.respond_error = RuntimeError("network down")
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)

    composer.draft = "Hello"
    assert await composer.submit() is False

    fake_api.respond_error = None
    assert await composer.retry_failed() is True
    assert composer.failed_message is None
    assert [c[1] for c in fake_api.respond_calls] == ["Hello", "Hello"]


async def test_retry_failed_without_failure(fake_api, channel, queries, routes):
    composer = Composer(fake_api, channel, queries, "t-1", routes.append)
    assert await composer.retry_failed() is False


async def test_error_record_keeps_stream_going(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    fake_api.reply = [
        {"type": "start"},
        {"type": "error", "message": "Assistant failed to respond"},
        {"type": "end"},
    ]
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)

    composer.draft = "Hello"
    assert await composer.submit() is True
    assert composer.last_error == "Assistant failed to respond"


async def test_quick_action_while_streaming_changes_nothing(fake_api, channel, queries, routes):
    thread_id = await fake_api.create_thread()
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)

    composer.draft = "first"
    first = asyncio.create_task(composer.submit())
    await asyncio.sleep(0)
    assert composer.sending
    composer.draft = "half typed"

    assert await composer.compose_and_send("Let's review my habits for today", "review_progress") is False
    assert await composer.send_message("I completed 1 habit today: Read") is False
    assert composer.draft == "half typed"
    assert composer.pending_agent_type is None
    assert await first is True

    composer.draft = "what's the weather"
    assert await composer.submit() is True
    assert fake_api.respond_calls == [(thread_id, "first", None), (thread_id, "what's the weather", None)]


async def test_end_refetches_messages_once(fake_api, channel, queries, routes, client_settings):
    thread_id = await fake_api.create_thread()
    view = ConversationView(fake_api, channel, queries, thread_id, routes.append, client_settings)
    view.mount()
    threads_fetches = []

    async def fetch_threads():
        threads_fetches.append(1)
        return []

    queries.mount(Query(THREADS_KEY, fetch_threads))
    composer = Composer(fake_api, channel, queries, thread_id, routes.append, defer_seconds=0)

    composer.draft = "Hello"
    assert await composer.submit() is True

    assert fake_api.get_calls[thread_id] == 1
    assert len(threads_fetches) == 1
