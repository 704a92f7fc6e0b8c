"""Event handlers for the coach server.

Handlers listen to bus events and react asynchronously.
Each handler registers itself on specific event types during __init__.
"""

from coach.config import Settings


def build_anthropic_headers(settings: Settings) -> dict[str, str]:
    """Build auth headers for background Anthropic API calls."""
    headers: dict[str, str] = {"anthropic-version": "2023-06-01"}
    if settings.anthropic_auth_token:
        headers["Authorization"] = f"Bearer {settings.anthropic_auth_token}"
    else:
        headers["x-api-key"] = settings.anthropic_api_key
    return headers
