"""Test fixtures using a throwaway SQLite database per test."""

import asyncio

import pytest
import pytest_asyncio

from coach.chat.threads import ThreadManager
from coach.client.api import ApiError, RelayRecord
from coach.config import ClientSettings, Settings
from coach.storage.database import Database

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Server settings pointed at a per-test SQLite file, no LLM credentials."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'coach.db'}",
        ANTHROPIC_API_KEY="",
        ANTHROPIC_AUTH_TOKEN="",
        api_tokens="test-token:user-1,other-token:user-2",
        dev_user_id="",
    )


@pytest.fixture
def client_settings(tmp_path) -> ClientSettings:
    """Client settings with no retry backoff and a private token file."""
    return ClientSettings(
        _env_file=None,
        api_url="http://test",
        token_file=str(tmp_path / "token"),
        retry_delay=0.0,
        stream_idle_timeout=5.0,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(settings):
    """Connected database with the chat schema created."""
    database = Database(settings)
    await database.connect()
    await database.create_schema()
    yield database
    await database.disconnect()


@pytest_asyncio.fixture
async def session(db):
    """Function-scoped session, rolled back after the test."""
    async with db.session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def threads(db) -> ThreadManager:
    return ThreadManager(db)


# ---------------------------------------------------------------------------
# Fake chat API for client tests
# ---------------------------------------------------------------------------


class FakeChatApi:
    """In-memory stand-in for ChatApiClient.

    respond() persists the user message, replays `reply` as relay records,
    and persists the concatenated deltas as the assistant message just
    before `end`, the way the server does.
    """

    def __init__(self) -> None:
        self.threads: dict[str, list[dict]] = {}
        self.deleted: set[str] = set()
        self.fail_next: dict[str, int] = {}
        self.get_calls: dict[str, int] = {}
        self.respond_calls: list[tuple] = []
        self.completed_habits: list[str] = []
        self.titles: dict[str, str | None] = {}
        self.list_calls = 0
        self.reply: list[dict] = [
            {"type": "start"},
            {"type": "delta", "content": "Hi"},
            {"type": "delta", "content": " there"},
            {"type": "end"},
        ]
        self.respond_error: Exception | None = None
        self.complete_error: Exception | None = None
        self._seq = 0

    def _add(self, thread_id: str, role: str, content: str) -> dict:
        self._seq += 1
        message = {
            "id": f"m-{self._seq}",
            "role": role,
            "content": content,
            "createdAt": f"2026-01-01T00:00:{self._seq:02d}Z",
        }
        self.threads[thread_id].append(message)
        return message

    async def create_thread(self, title=None) -> str:
        thread_id = f"t-{len(self.threads) + 1}"
        self.threads[thread_id] = []
        self.titles[thread_id] = title
        return thread_id

    async def list_threads(self, limit=None) -> list[dict]:
        self.list_calls += 1
        live = [t for t in self.threads if t not in self.deleted]
        return [
            {"id": t, "title": self.titles.get(t), "createdAt": "2026-01-01T00:00:00Z", "updatedAt": None}
            for t in reversed(live)
        ][:limit]

    async def delete_thread(self, thread_id) -> None:
        if thread_id not in self.threads or thread_id in self.deleted:
            raise ApiError(404, "Thread not found")
        self.deleted.add(thread_id)

    async def get_messages(self, thread_id, limit=None) -> list[dict]:
        self.get_calls[thread_id] = self.get_calls.get(thread_id, 0) + 1
        if thread_id not in self.threads or thread_id in self.deleted:
            raise ApiError(404, "Thread not found")
        if self.fail_next.get(thread_id):
            self.fail_next[thread_id] -= 1
            raise ApiError(503, "Service unavailable")
        return list(self.threads[thread_id])

    async def post_system_message(self, thread_id, content) -> dict:
        return self._add(thread_id, "system", content)

    async def complete_habit(self, habit_id, completed_at=None) -> None:
        if self.complete_error:
            raise self.complete_error
        self.completed_habits.append(habit_id)

    async def respond(self, thread_id, content, requested_agent_type=None):
        self.respond_calls.append((thread_id, content, requested_agent_type))
        self._add(thread_id, "user", content)
        text = ""
        for payload in self.reply:
            if payload["type"] == "end":
                if text:
                    self._add(thread_id, "assistant", text)
            elif payload["type"] == "delta":
                text += payload["content"]
            await asyncio.sleep(0)
            yield RelayRecord.from_json(payload)
        if self.respond_error:
            raise self.respond_error


@pytest.fixture
def fake_api() -> FakeChatApi:
    return FakeChatApi()
