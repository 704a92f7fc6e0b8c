"""Keyed async queries with retry and prefix invalidation.

A Query owns one fetch function and its last result. Views mount their
queries on a QueryClient; anything holding the client can then invalidate
by key prefix and every matching mounted query refetches.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from coach.client.api import ApiError

logger = logging.getLogger(__name__)

QueryKey = tuple[Any, ...]
RetryPolicy = Callable[[int, Exception], bool]

THREADS_KEY: QueryKey = ("/api/chat/threads",)


def messages_key(thread_id: str) -> QueryKey:
    return ("/api/chat/threads", thread_id, "messages")


def retry_unless_not_found(max_retries: int = 3) -> RetryPolicy:
    """Retry up to max_retries times; a 404 is final on the first attempt."""

    def should_retry(failures: int, error: Exception) -> bool:
        if isinstance(error, ApiError) and error.not_found:
            return False
        return failures <= max_retries

    return should_retry


def never_retry(failures: int, error: Exception) -> bool:
    return False


class QueryStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class Query:
    """One keyed fetch and its latest settled result."""

    def __init__(
        self,
        key: QueryKey,
        fetcher: Callable[[], Awaitable[Any]],
        retry: RetryPolicy = never_retry,
        retry_delay: float = 0.0,
        on_settled: Callable[[Query], None] | None = None,
    ) -> None:
        self.key = key
        self._fetcher = fetcher
        self._retry = retry
        self._retry_delay = retry_delay
        self._on_settled = on_settled
        self.status = QueryStatus.IDLE
        self.data: Any = None
        self.error: Exception | None = None
        self.failure_count = 0
        self.attempts = 0

    async def fetch(self) -> Any:
        """Run the fetcher, retrying per policy. Never raises."""
        self.status = QueryStatus.LOADING
        self.failure_count = 0
        while True:
            self.attempts += 1
            try:
                data = await self._fetcher()
            except Exception as e:
                self.failure_count += 1
                if self._retry(self.failure_count, e):
                    logger.debug("Query %s failed (%d), retrying: %s", self.key, self.failure_count, e)
                    await asyncio.sleep(self._retry_delay * self.failure_count)
                    continue
                logger.warning("Query %s failed after %d attempt(s): %s", self.key, self.failure_count, e)
                self.status = QueryStatus.ERROR
                self.error = e
                break
            self.status = QueryStatus.SUCCESS
            self.data = data
            self.error = None
            break

        if self._on_settled:
            self._on_settled(self)
        return self.data


class QueryClient:
    """Registry of mounted queries, invalidated by key prefix."""

    def __init__(self) -> None:
        self._queries: dict[QueryKey, Query] = {}

    def mount(self, query: Query) -> None:
        self._queries[query.key] = query

    def unmount(self, query: Query) -> None:
        if self._queries.get(query.key) is query:
            del self._queries[query.key]

    def get(self, key: QueryKey) -> Query | None:
        return self._queries.get(key)

    def matching(self, prefix: QueryKey, exact: bool = False) -> list[Query]:
        if exact:
            query = self._queries.get(prefix)
            return [query] if query else []
        return [q for k, q in self._queries.items() if k[: len(prefix)] == prefix]

    async def invalidate(self, prefix: QueryKey, exact: bool = False) -> int:
        """Refetch every mounted query under prefix. Returns how many ran."""
        queries = self.matching(prefix, exact)
        if queries:
            await asyncio.gather(*(q.fetch() for q in queries))
        return len(queries)
