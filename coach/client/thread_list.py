"""Recent threads, as a mounted query.

The list lives under THREADS_KEY so the Composer's refresh after a reply
ends picks up new threads and titles the server set in the meantime.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from coach.client.api import ChatApiClient
from coach.client.queries import THREADS_KEY, Query, QueryClient, QueryStatus
from coach.client.view import CHAT_HOME

logger = logging.getLogger(__name__)

DEFAULT_THREAD_TITLE = "Daily Coaching"
THREAD_LIST_LIMIT = 10


@dataclass(frozen=True)
class ThreadEntry:
    id: str
    title: str
    date: str
    active: bool


class ThreadList:
    """The thread switcher: one list query plus delete."""

    def __init__(
        self,
        api: ChatApiClient,
        queries: QueryClient,
        navigate: Callable[[str], None],
        limit: int = THREAD_LIST_LIMIT,
    ) -> None:
        self.api = api
        self.queries = queries
        self.navigate = navigate
        self.query = Query(THREADS_KEY, fetcher=lambda: self.api.list_threads(limit))

    def mount(self) -> None:
        self.queries.mount(self.query)

    def unmount(self) -> None:
        self.queries.unmount(self.query)

    @property
    def loaded(self) -> bool:
        return self.query.status is QueryStatus.SUCCESS

    async def refresh(self) -> list[dict[str, Any]]:
        await self.query.fetch()
        return self.threads

    @property
    def threads(self) -> list[dict[str, Any]]:
        return self.query.data or []

    def entries(self, active_thread_id: str | None = None) -> list[ThreadEntry]:
        return [
            ThreadEntry(
                id=str(t["id"]),
                title=t.get("title") or DEFAULT_THREAD_TITLE,
                date=(t.get("createdAt") or t.get("updatedAt") or "")[:10],
                active=str(t["id"]) == active_thread_id,
            )
            for t in self.threads
        ]

    async def delete(self, thread_id: str, active_thread_id: str | None = None) -> bool:
        """Delete a thread and refetch the list; leaves it if it was open."""
        try:
            await self.api.delete_thread(thread_id)
        except Exception as e:
            logger.error("Failed to delete thread %s: %s", thread_id, e)
            return False
        await self.queries.invalidate(THREADS_KEY, exact=True)
        if thread_id == active_thread_id:
            self.navigate(CHAT_HOME)
        return True
