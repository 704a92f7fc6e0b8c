"""View models for chat messages and their cards.

render_message() turns a persisted message into an optional text bubble
plus an optional card view. Cards are decoded on every render; nothing is
cached between renders. IgnoredCard (unknown or invalid payloads) renders
nothing.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from coach.chat.cards import (
    Card,
    GoalCelebrationCard,
    GoalHabitSwapCard,
    GoalSuggestionCard,
    GoalSuggestionsCard,
    GoalWithHabits,
    HabitCompletionCard,
    HabitInfo,
    HabitReviewCard,
    HabitSuggestionCard,
    IgnoredCard,
    InsightCard,
    OptimizationCard,
    PrioritizationCard,
    ProgressUpdateCard,
    decode_message,
)

AUTHORS = {"user": "You", "assistant": "Coach", "system": "System"}


@dataclass(frozen=True)
class TextBubble:
    role: str
    text: str
    created_at: str | None = None

    @property
    def author(self) -> str:
        return AUTHORS.get(self.role, self.role.title())


@dataclass(frozen=True)
class CardView:
    """Display-ready card: a heading and body lines."""

    type: str
    title: str
    lines: list[str]
    card: Card
    card_id: str | None = None


@dataclass(frozen=True)
class RenderedMessage:
    id: str | None
    bubble: TextBubble | None
    card: CardView | None = None


# --- Habit review bookkeeping ---


def habit_key(habit: HabitInfo, index: int) -> str:
    return habit.id or str(index)


@dataclass
class HabitReviewState:
    """Per-view habit review state, keyed by habit and by card."""

    recently_completed: dict[str, bool] = field(default_factory=dict)
    submitted: dict[str, bool] = field(default_factory=dict)

    def is_completed(self, habit: HabitInfo, index: int) -> bool:
        return habit.completed or self.recently_completed.get(habit_key(habit, index), False)

    def mark_completed(self, habit: HabitInfo, index: int) -> None:
        self.recently_completed[habit_key(habit, index)] = True

    def completed_habits(self, card: HabitReviewCard) -> list[HabitInfo]:
        return [h for i, h in enumerate(card.habits) if self.is_completed(h, i)]

    def summary_message(self, card: HabitReviewCard) -> str:
        done = self.completed_habits(card)
        if not done:
            return "I haven't completed any habits yet today"
        plural = "s" if len(done) != 1 else ""
        return f"I completed {len(done)} habit{plural} today: {', '.join(h.title for h in done)}"

    def is_submitted(self, card_id: str) -> bool:
        return self.submitted.get(card_id, False)

    def submit(self, card_id: str, card: HabitReviewCard) -> str:
        """Mark the card submitted and return the message to send."""
        self.submitted[card_id] = True
        return self.summary_message(card)


# --- Card formatters ---


def _habit_line(habit: HabitInfo) -> str:
    parts = [habit.title]
    if habit.frequency:
        parts.append(habit.frequency)
    if habit.effort_minutes:
        parts.append(f"{habit.effort_minutes} min")
    return " · ".join(parts)


def _goal_lines(item: GoalSuggestionCard | GoalWithHabits) -> list[str]:
    lines = [item.goal.title]
    if item.goal.description:
        lines.append(item.goal.description)
    lines.extend(f"- {_habit_line(h)}" for h in item.habits)
    return lines


def _goal_suggestion(card: GoalSuggestionCard, card_id: str, review: HabitReviewState) -> CardView:
    return CardView(card.type, "Suggested goal", _goal_lines(card), card)


def _goal_suggestions(card: GoalSuggestionsCard, card_id: str, review: HabitReviewState) -> CardView:
    lines: list[str] = []
    for item in card.items:
        lines.extend(_goal_lines(item))
    return CardView(card.type, "Suggested goals", lines, card)


def _habit_suggestion(card: HabitSuggestionCard, card_id: str, review: HabitReviewState) -> CardView:
    return CardView(card.type, "Suggested habits", [f"- {_habit_line(h)}" for h in card.habits], card)


def _habit_review(card: HabitReviewCard, card_id: str, review: HabitReviewState) -> CardView:
    done = review.completed_habits(card)
    if review.is_submitted(card_id):
        plural = "s" if len(done) != 1 else ""
        lines = [f"Added {len(done)} habit{plural}"]
    else:
        lines = [f"({len(done)}/{len(card.habits)}) habits completed today"]
        for i, habit in enumerate(card.habits):
            mark = "x" if review.is_completed(habit, i) else " "
            plural = "s" if habit.points != 1 else ""
            lines.append(f"[{mark}] {habit.title} ({habit.streak} day streak, {habit.points} point{plural})")
    if card.goals_progressed:
        lines.append("Goals progressed today:")
        lines.extend(f"- {g.title}" for g in card.goals_progressed)
    return CardView(card.type, "Review today's habits", lines, card, card_id)


def _habit_completion(card: HabitCompletionCard, card_id: str, review: HabitReviewState) -> CardView:
    lines = [card.habit.title, f"{card.habit.streak} day streak"]
    if card.goal_title:
        lines.append(f"Goal: {card.goal_title}")
    return CardView(card.type, "Habit completed", lines, card)


def _progress_update(card: ProgressUpdateCard, card_id: str, review: HabitReviewState) -> CardView:
    lines = [card.goal_title, f"{card.old_progress}% -> {card.new_progress}%"]
    if card.update_text:
        lines.append(card.update_text)
    if card.celebration and (card.milestone_reached or card.completed):
        lines.append(card.celebration)
    return CardView(card.type, "Progress update", lines, card)


def _goal_celebration(card: GoalCelebrationCard, card_id: str, review: HabitReviewState) -> CardView:
    lines = [card.goal_title, f"Finished at {card.final_progress}%"]
    if card.reflection:
        lines.append(card.reflection)
    return CardView(card.type, "Goal complete", lines, card)


def _goal_habit_swap(card: GoalHabitSwapCard, card_id: str, review: HabitReviewState) -> CardView:
    lines = [card.goal_title, f"Removed {len(card.removed_habit_ids)} habit(s)"]
    lines.extend(f"+ {_habit_line(h)}" for h in card.added_habits)
    return CardView(card.type, "Habits updated", lines, card)


def _optimization(card: OptimizationCard, card_id: str, review: HabitReviewState) -> CardView:
    lines = [card.summary] if card.summary else []
    lines.extend(f"{r.type}: {r.title}" for r in card.recommendations)
    return CardView(card.type, "Optimize your focus", lines, card, card_id)


def _insight(card: InsightCard, card_id: str, review: HabitReviewState) -> CardView:
    lines = [card.title, card.explanation]
    if card.confidence is not None:
        lines.append(f"Confidence: {card.confidence}%")
    return CardView(card.type, "Pattern insight", [line for line in lines if line], card)


def _prioritization(card: PrioritizationCard, card_id: str, review: HabitReviewState) -> CardView:
    lines = []
    for i, item in enumerate(card.items, start=1):
        title = item.get("title") or item.get("goalTitle") or item.get("goal_title") or "?"
        lines.append(f"{i}. {title}")
    return CardView(card.type, "Proposed focus", lines, card, card_id)


_FORMATTERS: dict[type, Callable[[Any, str, HabitReviewState], CardView]] = {
    GoalSuggestionCard: _goal_suggestion,
    GoalSuggestionsCard: _goal_suggestions,
    HabitSuggestionCard: _habit_suggestion,
    HabitReviewCard: _habit_review,
    HabitCompletionCard: _habit_completion,
    ProgressUpdateCard: _progress_update,
    GoalCelebrationCard: _goal_celebration,
    GoalHabitSwapCard: _goal_habit_swap,
    OptimizationCard: _optimization,
    InsightCard: _insight,
    PrioritizationCard: _prioritization,
}


def render_card(card: Card | None, card_id: str, review: HabitReviewState | None = None) -> CardView | None:
    """View model for a decoded card; None for absent or ignored cards."""
    if card is None or isinstance(card, IgnoredCard):
        return None
    formatter = _FORMATTERS.get(type(card))
    if formatter is None:
        return None
    return formatter(card, card_id, review or HabitReviewState())


def card_id_for(card_type: str, message_id: str | None) -> str:
    return f"{card_type}_{message_id}" if message_id else f"{card_type}_streaming"


def render_message(message: dict[str, Any], review: HabitReviewState | None = None) -> RenderedMessage:
    """Render one persisted message ({id, role, content, createdAt})."""
    message_id = message.get("id")
    role = str(message.get("role") or "")
    decoded = decode_message(role, str(message.get("content") or ""))

    bubble = TextBubble(role, decoded.text, message.get("createdAt")) if decoded.text else None
    card_view = None
    if decoded.card is not None and not isinstance(decoded.card, IgnoredCard):
        card_view = render_card(decoded.card, card_id_for(decoded.card.type, message_id), review)
    return RenderedMessage(id=message_id, bubble=bubble, card=card_view)
