"""Card payloads embedded in assistant message text.

An assistant message may carry one structured card after a fixed marker:

    <human-readable prefix>\\n---json---\\n<JSON object>

The JSON object is tagged by its ``type`` field. Decoding validates it
against a closed union of card models and fails closed: an unknown tag, or
a known tag whose fields don't validate, becomes an ``IgnoredCard`` that
renders nothing. A payload that isn't JSON at all is treated as absent and
only the prefix text is shown.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

CARD_MARKER = "\n---json---\n"


class _CardModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# --- Shared pieces ---


class GoalInfo(_CardModel):
    id: str | None = None
    title: str
    description: str = ""
    category: str | None = None
    priority: str | None = None


class HabitInfo(_CardModel):
    id: str | None = None
    title: str
    description: str = ""
    frequency: str | None = None
    effort_minutes: int | None = Field(default=None, alias="effortMinutes")
    impact: str | None = None
    streak: int = 0
    points: int = 0
    completed: bool = False


class GoalRef(_CardModel):
    id: str | None = None
    title: str


class GoalWithHabits(_CardModel):
    goal: GoalInfo
    habits: list[HabitInfo] = []


class Recommendation(_CardModel):
    type: Literal["archive", "modify", "add"]
    habit_id: str | None = Field(default=None, alias="habitId")
    title: str
    description: str = ""


# --- Card variants ---


class GoalSuggestionCard(_CardModel):
    type: Literal["goal_suggestion"]
    goal: GoalInfo
    habits: list[HabitInfo] = []


class GoalSuggestionsCard(_CardModel):
    type: Literal["goal_suggestions"]
    items: list[GoalWithHabits]


class HabitSuggestionCard(_CardModel):
    type: Literal["habit_suggestion"]
    habits: list[HabitInfo]


class HabitReviewCard(_CardModel):
    type: Literal["habit_review"]
    habits: list[HabitInfo]
    goals_progressed: list[GoalRef] = Field(default=[], alias="goalsProgressed")


class HabitCompletionCard(_CardModel):
    type: Literal["habit_completion"]
    habit: HabitInfo
    goal_title: str | None = None
    message: str | None = None


class ProgressUpdateCard(_CardModel):
    type: Literal["progress_update"]
    goal_id: str | None = None
    goal_title: str
    old_progress: int = 0
    new_progress: int = 0
    update_text: str = ""
    milestone_reached: bool = False
    completed: bool = False
    celebration: str | None = None


class GoalCelebrationCard(_CardModel):
    type: Literal["goal_celebration"]
    goal_id: str | None = None
    goal_title: str
    completed_date: str | None = None
    reflection: str | None = None
    final_progress: int = 100


class GoalHabitSwapCard(_CardModel):
    type: Literal["goal_habit_swap"]
    goal_id: str | None = None
    goal_title: str
    removed_habit_ids: list[str] = []
    added_habits: list[HabitInfo] = []


class OptimizationCard(_CardModel):
    type: Literal["optimization"]
    summary: str = ""
    recommendations: list[Recommendation]


class InsightCard(_CardModel):
    type: Literal["insight"]
    title: str
    explanation: str = ""
    confidence: int | None = None
    life_metric_ids: list[str] = Field(default=[], alias="lifeMetricIds")


class PrioritizationCard(_CardModel):
    type: Literal["prioritization"]
    items: list[dict[str, Any]]


KnownCard = Annotated[
    Union[
        GoalSuggestionCard,
        GoalSuggestionsCard,
        HabitSuggestionCard,
        HabitReviewCard,
        HabitCompletionCard,
        ProgressUpdateCard,
        GoalCelebrationCard,
        GoalHabitSwapCard,
        OptimizationCard,
        InsightCard,
        PrioritizationCard,
    ],
    Field(discriminator="type"),
]

CARD_TYPES = frozenset(
    {
        "goal_suggestion",
        "goal_suggestions",
        "habit_suggestion",
        "habit_review",
        "habit_completion",
        "progress_update",
        "goal_celebration",
        "goal_habit_swap",
        "optimization",
        "insight",
        "prioritization",
    }
)

_card_adapter: TypeAdapter[KnownCard] = TypeAdapter(KnownCard)


@dataclass(frozen=True)
class IgnoredCard:
    """A payload that decoded as JSON but isn't a card we can render."""

    type: str
    raw: Any
    reason: str = "unknown_type"


Card = Union[
    GoalSuggestionCard,
    GoalSuggestionsCard,
    HabitSuggestionCard,
    HabitReviewCard,
    HabitCompletionCard,
    ProgressUpdateCard,
    GoalCelebrationCard,
    GoalHabitSwapCard,
    OptimizationCard,
    InsightCard,
    PrioritizationCard,
    IgnoredCard,
]


@dataclass(frozen=True)
class DecodedMessage:
    """Display parts of a persisted message."""

    text: str
    card: Card | None = None


def split_content(content: str) -> tuple[str, Any | None]:
    """Split raw message content into (text, payload).

    Content without the marker is all text. The payload is whatever JSON
    followed the first marker, or None if that wasn't valid JSON.
    """
    prefix, marker, remainder = content.partition(CARD_MARKER)
    if not marker:
        return content, None
    try:
        payload = json.loads(remainder)
    except ValueError:
        logger.debug("Discarding malformed card payload (%d chars)", len(remainder))
        return prefix.strip(), None
    return prefix.strip(), payload


def encode_content(text: str, payload: Any | None = None) -> str:
    """Build stored message content from text and an optional card payload."""
    if payload is None:
        return text
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return f"{text}{CARD_MARKER}{json.dumps(payload)}"


def parse_card(payload: Any) -> Card:
    """Validate a decoded payload into a card variant.

    Never raises: anything that isn't a well-formed known card comes back
    as an IgnoredCard.
    """
    if isinstance(payload, (BaseModel, IgnoredCard)):
        return payload  # type: ignore[return-value]
    if not isinstance(payload, dict):
        return IgnoredCard(type="", raw=payload, reason="not_an_object")

    card_type = str(payload.get("type") or "").lower()
    if card_type not in CARD_TYPES:
        return IgnoredCard(type=card_type, raw=payload)

    try:
        return _card_adapter.validate_python({**payload, "type": card_type})
    except ValidationError as e:
        logger.debug("Card %s failed validation: %d errors", card_type, e.error_count())
        return IgnoredCard(type=card_type, raw=payload, reason="invalid")


def decode_message(role: str, content: str) -> DecodedMessage:
    """Split and validate a persisted message for display.

    Only assistant messages carry cards; other roles are shown verbatim.
    """
    if role != "assistant":
        return DecodedMessage(text=content)
    text, payload = split_content(content)
    if payload is None:
        return DecodedMessage(text=text)
    return DecodedMessage(text=text, card=parse_card(payload))
