"""Chat client - API access plus the conversation view state machine.

Public API: ChatApiClient, Composer, ConversationView, ThreadList, and the
pieces they share (StreamChannel, QueryClient).
"""

from coach.client.api import ApiError, ChatApiClient, RelayRecord, StreamUnavailableError, TokenStore
from coach.client.channel import StreamChannel, StreamSignal, Subscription
from coach.client.composer import Composer
from coach.client.queries import THREADS_KEY, Query, QueryClient, messages_key
from coach.client.scroll import SCROLL_FOLLOW_THRESHOLD_PX, ScrollFollower
from coach.client.stream import Phase, StreamSession
from coach.client.thread_list import ThreadList
from coach.client.view import ConversationView

__all__ = [
    "ApiError",
    "ChatApiClient",
    "Composer",
    "ConversationView",
    "Phase",
    "Query",
    "QueryClient",
    "RelayRecord",
    "SCROLL_FOLLOW_THRESHOLD_PX",
    "ScrollFollower",
    "StreamChannel",
    "StreamSession",
    "StreamSignal",
    "StreamUnavailableError",
    "Subscription",
    "THREADS_KEY",
    "ThreadList",
    "TokenStore",
    "messages_key",
]
