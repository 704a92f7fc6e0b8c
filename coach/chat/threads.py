"""Thread management - conversations and their messages.

Threads belong to one user and are soft-deleted; a deleted thread behaves
exactly like a missing one for its owner. Messages are immutable once
written and read back in insertion order.

All public methods follow the session injection pattern: pass a session
to join an outer transaction, or omit it to get a self-committing one.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coach.chat.schemas import MessageDetail, Role, ThreadDetail, ThreadInput, ThreadSummary
from coach.storage.database import Database
from coach.storage.models import ChatMessage, ChatThread

logger = logging.getLogger(__name__)

MAX_THREAD_LIMIT = 50
MAX_MESSAGE_LIMIT = 200


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ThreadNotFoundError(ValueError):
    """Thread is missing, soft-deleted, or owned by someone else."""

    def __init__(self, thread_id: UUID | str) -> None:
        super().__init__(f"Thread {thread_id} not found")
        self.thread_id = thread_id


class ThreadManager:
    """Manages chat threads and their messages."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # create()
    # ------------------------------------------------------------------

    async def create(
        self, user_id: str, input: ThreadInput | None = None, session: AsyncSession | None = None
    ) -> ThreadDetail:
        """Create an empty thread for a user."""
        if session is None:
            async with self.db.session() as session:
                result = await self._create(user_id, input or ThreadInput(), session)
                await session.commit()
                return result
        return await self._create(user_id, input or ThreadInput(), session)

    async def _create(self, user_id: str, input: ThreadInput, session: AsyncSession) -> ThreadDetail:
        thread = ChatThread(user_id=user_id, title=input.title, is_test=input.is_test)
        session.add(thread)
        await session.flush()
        logger.debug("Created thread %s for user %s", thread.id, user_id)
        return self._to_detail(thread)

    # ------------------------------------------------------------------
    # list_recent()
    # ------------------------------------------------------------------

    async def list_recent(
        self, user_id: str, limit: int = 5, session: AsyncSession | None = None
    ) -> list[ThreadSummary]:
        """Most recently active live threads, newest first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_recent(user_id, limit, session)
        return await self._list_recent(user_id, limit, session)

    async def _list_recent(self, user_id: str, limit: int, session: AsyncSession) -> list[ThreadSummary]:
        limit = max(1, min(limit, MAX_THREAD_LIMIT))
        result = await session.execute(
            select(ChatThread)
            .where(ChatThread.user_id == user_id, ChatThread.deleted_at.is_(None))
            .order_by(ChatThread.updated_at.desc())
            .limit(limit)
        )
        return [self._to_summary(t) for t in result.scalars().all()]

    # ------------------------------------------------------------------
    # get() / get_owned()
    # ------------------------------------------------------------------

    async def get(self, thread_id: UUID, session: AsyncSession | None = None) -> ThreadDetail | None:
        """Fetch a thread by id regardless of owner or deletion."""
        if session is None:
            async with self.db.session() as session:
                return await self._get(thread_id, session)
        return await self._get(thread_id, session)

    async def _get(self, thread_id: UUID, session: AsyncSession) -> ThreadDetail | None:
        thread = await session.get(ChatThread, thread_id)
        return self._to_detail(thread) if thread else None

    async def get_owned(
        self, thread_id: UUID, user_id: str, session: AsyncSession | None = None
    ) -> ThreadDetail:
        """Fetch a live thread owned by user_id.

        Raises:
            ThreadNotFoundError: missing, deleted, or foreign thread.
        """
        if session is None:
            async with self.db.session() as session:
                return self._to_detail(await self._get_owned_orm(thread_id, user_id, session))
        return self._to_detail(await self._get_owned_orm(thread_id, user_id, session))

    async def _get_owned_orm(self, thread_id: UUID, user_id: str, session: AsyncSession) -> ChatThread:
        result = await session.execute(
            select(ChatThread).where(
                ChatThread.id == thread_id,
                ChatThread.user_id == user_id,
                ChatThread.deleted_at.is_(None),
            )
        )
        thread = result.scalar_one_or_none()
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        return thread

    # ------------------------------------------------------------------
    # soft_delete()
    # ------------------------------------------------------------------

    async def soft_delete(self, thread_id: UUID, user_id: str, session: AsyncSession | None = None) -> None:
        """Tombstone a thread. Its messages are kept but no longer served."""
        if session is None:
            async with self.db.session() as session:
                await self._soft_delete(thread_id, user_id, session)
                await session.commit()
                return
        await self._soft_delete(thread_id, user_id, session)

    async def _soft_delete(self, thread_id: UUID, user_id: str, session: AsyncSession) -> None:
        thread = await self._get_owned_orm(thread_id, user_id, session)
        thread.deleted_at = _utcnow()
        await session.flush()
        logger.info("Soft-deleted thread %s", thread_id)

    # ------------------------------------------------------------------
    # append_message()
    # ------------------------------------------------------------------

    async def append_message(
        self,
        thread_id: UUID,
        user_id: str,
        role: Role,
        content: str,
        session: AsyncSession | None = None,
    ) -> MessageDetail:
        """Append a message to a live owned thread and touch its updated_at."""
        if session is None:
            async with self.db.session() as session:
                result = await self._append_message(thread_id, user_id, role, content, session)
                await session.commit()
                return result
        return await self._append_message(thread_id, user_id, role, content, session)

    async def _append_message(
        self,
        thread_id: UUID,
        user_id: str,
        role: Role,
        content: str,
        session: AsyncSession,
    ) -> MessageDetail:
        thread = await self._get_owned_orm(thread_id, user_id, session)
        now = _utcnow()
        last = thread.updated_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=UTC)
        # created_at strictly increases per thread so it alone orders messages
        if now <= last:
            now = last + timedelta(microseconds=1)
        message = ChatMessage(thread_id=thread.id, role=role, content=content, created_at=now)
        session.add(message)
        thread.updated_at = now
        await session.flush()
        return self._to_message(message)

    # ------------------------------------------------------------------
    # get_messages()
    # ------------------------------------------------------------------

    async def get_messages(
        self,
        thread_id: UUID,
        user_id: str,
        limit: int = 50,
        session: AsyncSession | None = None,
    ) -> list[MessageDetail]:
        """The most recent `limit` messages of a thread, oldest first.

        Raises:
            ThreadNotFoundError: missing, deleted, or foreign thread.
        """
        if session is None:
            async with self.db.session() as session:
                return await self._get_messages(thread_id, user_id, limit, session)
        return await self._get_messages(thread_id, user_id, limit, session)

    async def _get_messages(
        self, thread_id: UUID, user_id: str, limit: int, session: AsyncSession
    ) -> list[MessageDetail]:
        await self._get_owned_orm(thread_id, user_id, session)
        limit = max(1, min(limit, MAX_MESSAGE_LIMIT))
        result = await session.execute(
            select(ChatMessage)
            .where(ChatMessage.thread_id == thread_id)
            .order_by(ChatMessage.created_at.desc())
            .limit(limit)
        )
        messages = [self._to_message(m) for m in result.scalars().all()]
        messages.reverse()
        return messages

    # ------------------------------------------------------------------
    # set_title()
    # ------------------------------------------------------------------

    async def set_title(self, thread_id: UUID, title: str, session: AsyncSession | None = None) -> None:
        """Set the display title. Does not touch updated_at."""
        if session is None:
            async with self.db.session() as session:
                await self._set_title(thread_id, title, session)
                await session.commit()
                return
        await self._set_title(thread_id, title, session)

    async def _set_title(self, thread_id: UUID, title: str, session: AsyncSession) -> None:
        thread = await session.get(ChatThread, thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        thread.title = title[:255]
        await session.flush()

    # ------------------------------------------------------------------
    # Converters
    # ------------------------------------------------------------------

    @staticmethod
    def _to_summary(thread: ChatThread) -> ThreadSummary:
        return ThreadSummary(
            id=thread.id,
            title=thread.title,
            created_at=thread.created_at,
            updated_at=thread.updated_at,
        )

    @staticmethod
    def _to_detail(thread: ChatThread) -> ThreadDetail:
        return ThreadDetail(
            id=thread.id,
            user_id=thread.user_id,
            title=thread.title,
            summary=thread.summary,
            is_test=thread.is_test,
            created_at=thread.created_at,
            updated_at=thread.updated_at,
            deleted_at=thread.deleted_at,
        )

    @staticmethod
    def _to_message(message: ChatMessage) -> MessageDetail:
        return MessageDetail(
            id=message.id,
            role=message.role,  # type: ignore[arg-type]
            content=message.content,
            created_at=message.created_at,
        )
