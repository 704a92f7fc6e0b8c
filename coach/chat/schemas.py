"""Pydantic DTOs for chat threads and messages.

These models define the public contract for the chat store and the REST
layer. Wire names are camelCase (``threadId``, ``createdAt``); dump with
``by_alias=True`` when serializing for clients.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Type aliases using Literal for validation at the boundary
Role = Literal["user", "assistant", "system"]
AgentType = Literal[
    "master",
    "review_progress",
    "suggest_goals",
    "prioritize_optimize",
    "surprise_me",
    "onboarding_welcome",
]


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Threads ---


class ThreadInput(_WireModel):
    """Input for creating a thread."""

    title: str | None = Field(default=None, max_length=255)
    is_test: bool = False


class ThreadSummary(_WireModel):
    """Thread as listed for its owner."""

    id: UUID
    title: str | None
    created_at: datetime
    updated_at: datetime


class ThreadDetail(ThreadSummary):
    """Full thread row, used server-side."""

    user_id: str
    summary: str | None = None
    is_test: bool = False
    deleted_at: datetime | None = None


# --- Messages ---


class MessageInput(_WireModel):
    """Body of a system-message append."""

    content: str

    @field_validator("content")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v


class MessageDetail(_WireModel):
    """A persisted message as returned to clients."""

    id: UUID
    role: Role
    content: str
    created_at: datetime

