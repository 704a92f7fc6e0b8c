"""Shared data models for the API layer.

Kept apart from runner.py so rest.py can build relay records without
importing the runner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """A single event from the Anthropic streaming API response."""

    type: str  # text_delta, tool_start, tool_input_delta, block_stop, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0


@dataclass
class ApiResponse:
    """Parsed response from Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None


@dataclass
class CoachEvent:
    """Something the coach produced while answering a turn."""

    type: str  # delta, cta, structured_data, error
    content: str = ""
    label: str = ""
    data: dict[str, Any] | None = None
    message: str = ""

    def to_record(self) -> dict[str, Any]:
        """SSE record body for this event."""
        if self.type == "delta":
            return {"type": "delta", "content": self.content}
        if self.type == "cta":
            return {"type": "cta", "label": self.label}
        if self.type == "structured_data":
            return {"type": "structured_data", "data": self.data}
        return {"type": "error", "message": self.message}


@dataclass
class TurnOutcome:
    """What the relay persists once a turn finishes."""

    text_parts: list[str] = field(default_factory=list)
    card: dict[str, Any] | None = None
    cta: str | None = None
    failed: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts).strip()
