"""Auto-follow for the conversation scroll region.

New content scrolls the view only if the reader was already near the
bottom; anyone who scrolled up to reread keeps their position. The pinned
flag is recomputed on every scroll event.
"""

from __future__ import annotations

SCROLL_FOLLOW_THRESHOLD_PX = 80


class ScrollFollower:
    def __init__(self, threshold: int = SCROLL_FOLLOW_THRESHOLD_PX) -> None:
        self.threshold = threshold
        self.pinned = True  # A fresh view starts at the bottom

    def on_scroll(self, scroll_top: float, scroll_height: float, client_height: float) -> bool:
        """Record a scroll event. Returns the new pinned state."""
        distance = scroll_height - (scroll_top + client_height)
        self.pinned = distance <= self.threshold
        return self.pinned

    def should_follow(self) -> bool:
        return self.pinned
