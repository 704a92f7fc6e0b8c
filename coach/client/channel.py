"""Publish/subscribe channel between the Composer and a conversation view.

The Composer publishes stream signals; the view that is currently showing
the thread subscribes while mounted and drops its subscription on unmount.
publish() reports whether anyone was listening, which lets the Composer
retry delivery while a freshly navigated view is still mounting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

# Signal kinds
USER_MESSAGE = "user_message"
BEGIN = "begin"
APPEND = "append"
CTA = "cta"
STRUCTURED_DATA = "structured_data"
END = "end"


@dataclass(frozen=True)
class StreamSignal:
    kind: str
    text: str = ""
    data: Any = None
    session: str | None = None  # Stream the signal belongs to; None = current


Listener = Callable[[StreamSignal], None]


class Subscription:
    """Handle returned by subscribe(); unsubscribe() is idempotent."""

    def __init__(self, channel: StreamChannel, listener: Listener) -> None:
        self._channel = channel
        self._listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self._listener)
            self.active = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *args: object) -> None:
        self.unsubscribe()


class StreamChannel:
    """Synchronous fan-out of StreamSignals to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self, listener)

    def _remove(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def has_subscribers(self) -> bool:
        return bool(self._listeners)

    def publish(self, signal: StreamSignal) -> bool:
        """Deliver to every listener. Returns False if nobody is subscribed.

        A failing listener is logged and skipped; the rest still receive
        the signal.
        """
        if not self._listeners:
            return False
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception:
                logger.exception("Stream listener failed on %s signal", signal.kind)
        return True
