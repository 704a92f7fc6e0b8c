"""Chat module - threads, messages, and the card codec.

Public API: ThreadManager + schema types + card decoding helpers.
"""

from coach.chat.cards import (
    CARD_MARKER,
    Card,
    DecodedMessage,
    IgnoredCard,
    decode_message,
    encode_content,
    parse_card,
    split_content,
)
from coach.chat.schemas import (
    AgentType,
    MessageDetail,
    MessageInput,
    Role,
    ThreadDetail,
    ThreadInput,
    ThreadSummary,
)
from coach.chat.threads import ThreadManager, ThreadNotFoundError

__all__ = [
    "ThreadManager",
    "ThreadNotFoundError",
    # Type aliases
    "AgentType",
    "Role",
    # Threads
    "ThreadDetail",
    "ThreadInput",
    "ThreadSummary",
    # Messages
    "MessageDetail",
    "MessageInput",
    # Cards
    "CARD_MARKER",
    "Card",
    "DecodedMessage",
    "IgnoredCard",
    "decode_message",
    "encode_content",
    "parse_card",
    "split_content",
]
