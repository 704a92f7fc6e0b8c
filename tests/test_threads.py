"""Tests for ThreadManager - threads, messages, ownership, soft delete."""

import uuid
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from coach.chat.schemas import ThreadInput
from coach.chat.threads import ThreadNotFoundError

USER = "user-1"
OTHER = "user-2"


async def test_create_thread(threads):
    thread = await threads.create(USER, ThreadInput(title="Morning routine"))

    assert thread.user_id == USER
    assert thread.title == "Morning routine"
    assert thread.deleted_at is None
    assert not thread.is_test


async def test_create_untitled(threads):
    thread = await threads.create(USER)
    assert thread.title is None


async def test_append_and_read_in_order(threads):
    thread = await threads.create(USER)
    await threads.append_message(thread.id, USER, "user", "Hello")
    await threads.append_message(thread.id, USER, "assistant", "Hi there")

    messages = await threads.get_messages(thread.id, USER)

    assert [(m.role, m.content) for m in messages] == [("user", "Hello"), ("assistant", "Hi there")]


async def test_get_messages_limit_keeps_most_recent(threads):
    thread = await threads.create(USER)
    for i in range(5):
        await threads.append_message(thread.id, USER, "user", f"m{i}")

    messages = await threads.get_messages(thread.id, USER, limit=3)

    assert [m.content for m in messages] == ["m2", "m3", "m4"]


async def test_same_instant_messages_keep_insertion_order(threads):
    thread = await threads.create(USER)
    frozen = datetime.now(UTC)

    with patch("coach.chat.threads._utcnow", return_value=frozen):
        for i in range(4):
            await threads.append_message(thread.id, USER, "user", f"m{i}")

    messages = await threads.get_messages(thread.id, USER)
    assert [m.content for m in messages] == ["m0", "m1", "m2", "m3"]
    assert len({m.created_at for m in messages}) == 4

    recent = await threads.get_messages(thread.id, USER, limit=2)
    assert [m.content for m in recent] == ["m2", "m3"]


async def test_append_touches_updated_at(threads):
    thread = await threads.create(USER)
    before = (await threads.get(thread.id)).updated_at
    await threads.append_message(thread.id, USER, "user", "Hello")

    after = (await threads.get(thread.id)).updated_at
    assert after > before


async def test_list_recent_orders_by_activity(threads):
    first = await threads.create(USER, ThreadInput(title="first"))
    second = await threads.create(USER, ThreadInput(title="second"))
    await threads.append_message(first.id, USER, "user", "bump")

    listed = await threads.list_recent(USER)

    assert [t.id for t in listed] == [first.id, second.id]


async def test_list_recent_respects_limit_and_owner(threads):
    for i in range(3):
        await threads.create(USER, ThreadInput(title=f"t{i}"))
    await threads.create(OTHER, ThreadInput(title="not mine"))

    listed = await threads.list_recent(USER, limit=2)

    assert len(listed) == 2
    assert all(t.title != "not mine" for t in listed)


async def test_foreign_thread_is_not_found(threads):
    thread = await threads.create(OTHER)

    with pytest.raises(ThreadNotFoundError):
        await threads.get_owned(thread.id, USER)
    with pytest.raises(ThreadNotFoundError):
        await threads.append_message(thread.id, USER, "user", "sneaky")
    with pytest.raises(ThreadNotFoundError):
        await threads.get_messages(thread.id, USER)


async def test_missing_thread_is_not_found(threads):
    with pytest.raises(ThreadNotFoundError):
        await threads.get_messages(uuid.uuid4(), USER)


async def test_soft_delete_hides_thread(threads):
    thread = await threads.create(USER)
    await threads.append_message(thread.id, USER, "user", "Hello")

    await threads.soft_delete(thread.id, USER)

    assert await threads.list_recent(USER) == []
    with pytest.raises(ThreadNotFoundError):
        await threads.get_messages(thread.id, USER)
    with pytest.raises(ThreadNotFoundError):
        await threads.soft_delete(thread.id, USER)

    # Row is kept as a tombstone
    tombstone = await threads.get(thread.id)
    assert tombstone is not None
    assert tombstone.deleted_at is not None


async def test_set_title_truncates(threads):
    thread = await threads.create(USER)
    await threads.set_title(thread.id, "x" * 300)

    refreshed = await threads.get(thread.id)
    assert refreshed.title == "x" * 255


async def test_session_injection_shares_transaction(threads, session):
    thread = await threads.create(USER, session=session)
    await threads.append_message(thread.id, USER, "user", "inside", session=session)

    messages = await threads.get_messages(thread.id, USER, session=session)
    assert [m.content for m in messages] == ["inside"]

    await session.rollback()
    assert await threads.get(thread.id) is None
