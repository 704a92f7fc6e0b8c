"""Tests for the terminal chat front end."""

import pytest_asyncio

from coach.client.queries import THREADS_KEY
from coach.client.render import render_message
from coach.terminal import TerminalChat, format_message


@pytest_asyncio.fixture
async def chat(client_settings, fake_api):
    chat = TerminalChat(client_settings)
    real_api = chat.api
    chat.api = chat.composer.api = chat.thread_list.api = fake_api
    yield chat
    chat.api = real_api
    await chat.close()


def test_format_message_with_card():
    rendered = render_message(
        {
            "id": "m-1",
            "role": "assistant",
            "content": 'Nice work!\n---json---\n{"type":"habit_completion","habit":{"title":"Run","streak":3}}',
        }
    )
    assert format_message(rendered).splitlines() == [
        "Coach: Nice work!",
        "  [Habit completed]",
        "    Run",
        "    3 day streak",
    ]


async def test_first_message_creates_thread(chat, fake_api, capsys):
    assert await chat.handle_line("Hello") is True

    assert chat.composer.thread_id == "t-1"
    assert chat.view.thread_id == "t-1"
    assert [m["content"] for m in chat.view.messages] == ["Hello", "Hi there"]
    assert "Coach: Hi there" in capsys.readouterr().out


async def test_quick_action_routes_agent(chat, fake_api):
    await chat.handle_line("/review")
    assert fake_api.respond_calls[0][2] == "review_progress"


async def test_new_and_quit(chat):
    await chat.handle_line("Hello")
    assert await chat.handle_line("/new") is True
    assert chat.composer.thread_id is None
    assert await chat.handle_line("/quit") is False


async def test_reply_end_refreshes_thread_list(chat, fake_api, capsys):
    assert chat.queries.matching(THREADS_KEY, exact=True) == [chat.thread_list.query]

    await chat.handle_line("Hello")
    # Once after the thread was created, once after the reply ended
    assert fake_api.list_calls == 2

    fake_api.titles["t-1"] = "Morning routine"
    await chat.handle_line("Again")
    assert fake_api.list_calls == 3

    capsys.readouterr()
    await chat.handle_line("/threads")
    assert fake_api.list_calls == 3
    assert "* t-1  Morning routine" in capsys.readouterr().out


async def test_delete_leaves_thread(chat, fake_api, capsys):
    await chat.handle_line("Hello")
    assert await chat.handle_line("/delete") is True

    assert "(thread deleted)" in capsys.readouterr().out
    assert chat.composer.thread_id is None
    assert chat.thread_list.threads == []
