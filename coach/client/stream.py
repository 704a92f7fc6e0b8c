"""Client-side stream session state machine.

    idle --begin--> thinking --first append--> streaming --end--> idle

A begin in any phase starts a fresh session: text, card, and CTA are
cleared, never merged. Signals tagged with an older session id are
ignored, so a superseded HTTP stream can't leak into the new one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from coach.chat.cards import Card, parse_card

logger = logging.getLogger(__name__)


class Phase(StrEnum):
    IDLE = "idle"
    THINKING = "thinking"
    STREAMING = "streaming"


@dataclass
class StreamSession:
    """Transient state of the reply currently being streamed."""

    phase: Phase = Phase.IDLE
    text: str = ""
    cta: str | None = None
    payload: Card | None = None
    session_id: str | None = None
    generation: int = 0

    @property
    def active(self) -> bool:
        return self.phase is not Phase.IDLE

    def _accepts(self, session: str | None) -> bool:
        if session is not None and session != self.session_id:
            logger.debug("Ignoring signal from superseded session %s", session)
            return False
        return True

    def begin(self, session: str | None = None) -> None:
        self.generation += 1
        self.session_id = session
        self.text = ""
        self.cta = None
        self.payload = None
        self.phase = Phase.THINKING

    def append(self, token: str, session: str | None = None) -> bool:
        """Apply a text delta. Ignored while idle."""
        if not self.active or not self._accepts(session):
            return False
        self.text += token
        self.phase = Phase.STREAMING
        return True

    def set_cta(self, label: str, session: str | None = None) -> bool:
        if not self.active or not self._accepts(session):
            return False
        self.cta = label
        return True

    def set_structured_data(self, data: Any, session: str | None = None) -> bool:
        """Replace the card slot. Accepted in thinking or streaming."""
        if not self.active or not self._accepts(session):
            return False
        self.payload = parse_card(data)
        return True

    def end(self, session: str | None = None) -> bool:
        """Finish the session and discard its transient state."""
        if not self._accepts(session):
            return False
        was_active = self.active
        self.phase = Phase.IDLE
        self.text = ""
        self.cta = None
        self.payload = None
        return was_active
