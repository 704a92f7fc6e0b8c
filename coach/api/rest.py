"""REST + SSE API for the habit coach chat.

Endpoints (all under /api/chat require authentication):
  POST   /api/chat/threads                      - Create a thread
  GET    /api/chat/threads                      - Recent threads, newest activity first
  DELETE /api/chat/threads/{id}                 - Soft-delete a thread
  GET    /api/chat/threads/{id}/messages        - Messages, oldest first
  POST   /api/chat/threads/{id}/system-message  - Record a card action
  POST   /api/chat/respond                      - Stream the coach's reply (SSE)
  GET    /health                                - Health check (DB connectivity)
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Mount, Route

from coach.api.auth import BearerTokenBackend, unauthorized
from coach.api.models import CoachEvent, TurnOutcome
from coach.api.prompts import resolve_agent_type
from coach.api.runner import CoachRunner
from coach.chat.cards import encode_content
from coach.chat.schemas import MessageInput, ThreadInput
from coach.chat.threads import ThreadManager, ThreadNotFoundError
from coach.config import Settings
from coach.events import THREAD_CREATED, THREAD_DELETED, TURN_COMPLETED, Event, EventBus
from coach.storage.database import Database

logger = logging.getLogger(__name__)

RELAY_ERROR_MESSAGE = "Assistant failed to respond"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _sse(record: dict[str, Any]) -> str:
    """Frame one relay record."""
    return f"data: {json.dumps(record)}\n\n"


def _parse_limit(request: Request, default: int, maximum: int) -> int:
    try:
        limit = int(request.query_params.get("limit", default))
    except ValueError:
        return default
    return max(1, min(limit, maximum))


def _thread_id(request: Request) -> UUID | None:
    try:
        return UUID(request.path_params["thread_id"])
    except ValueError:
        return None


def _not_found() -> JSONResponse:
    return JSONResponse({"message": "Thread not found"}, status_code=404)


async def _json_body(request: Request, allow_empty: bool = False) -> dict[str, Any] | None:
    """Parse a JSON object body. Returns None when the body is unusable."""
    raw = await request.body()
    if not raw.strip():
        return {} if allow_empty else None
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    threads: ThreadManager,
    runner: CoachRunner,
    database: Database,
    settings: Settings,
    bus: EventBus | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def emit(event_type: str, user_id: str, thread_id: UUID, **data: Any) -> None:
        if bus is not None:
            await bus.emit(Event(type=event_type, user_id=user_id, thread_id=str(thread_id), data=data))

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def create_thread(request: Request) -> Response:
        """POST /api/chat/threads - Create an empty thread."""
        if not request.user.is_authenticated:
            return unauthorized()
        body = await _json_body(request, allow_empty=True)
        if body is None:
            return JSONResponse({"message": "Invalid JSON body"}, status_code=400)
        try:
            input = ThreadInput.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"message": "Invalid thread", "errors": e.errors(include_url=False)}, status_code=400)

        user_id = request.user.identity
        try:
            thread = await threads.create(user_id, input)
        except Exception as e:
            logger.error("POST /threads failed: %s", e)
            return JSONResponse({"message": "Failed to create thread"}, status_code=500)

        await emit(THREAD_CREATED, user_id, thread.id)
        return JSONResponse(
            {"id": str(thread.id), "threadId": str(thread.id), "title": thread.title},
            status_code=201,
        )

    async def list_threads(request: Request) -> Response:
        """GET /api/chat/threads - Recent threads for the caller."""
        if not request.user.is_authenticated:
            return unauthorized()
        limit = _parse_limit(request, default=5, maximum=50)
        try:
            summaries = await threads.list_recent(request.user.identity, limit=limit)
        except Exception as e:
            logger.error("GET /threads failed: %s", e)
            return JSONResponse({"message": "Failed to list threads"}, status_code=500)
        return JSONResponse([s.model_dump(mode="json", by_alias=True) for s in summaries])

    async def delete_thread(request: Request) -> Response:
        """DELETE /api/chat/threads/{id} - Soft-delete a thread."""
        if not request.user.is_authenticated:
            return unauthorized()
        thread_id = _thread_id(request)
        if thread_id is None:
            return _not_found()

        user_id = request.user.identity
        try:
            await threads.soft_delete(thread_id, user_id)
        except ThreadNotFoundError:
            return _not_found()
        except Exception as e:
            logger.error("DELETE /threads/%s failed: %s", thread_id, e)
            return JSONResponse({"message": "Failed to delete thread"}, status_code=500)

        await emit(THREAD_DELETED, user_id, thread_id)
        return JSONResponse({"id": str(thread_id), "deleted": True})

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(request: Request) -> Response:
        """GET /api/chat/threads/{id}/messages - Most recent messages, oldest first."""
        if not request.user.is_authenticated:
            return unauthorized()
        thread_id = _thread_id(request)
        if thread_id is None:
            return _not_found()
        limit = _parse_limit(request, default=50, maximum=200)
        try:
            messages = await threads.get_messages(thread_id, request.user.identity, limit=limit)
        except ThreadNotFoundError:
            return _not_found()
        except Exception as e:
            logger.error("GET /threads/%s/messages failed: %s", thread_id, e)
            return JSONResponse({"message": "Failed to load messages"}, status_code=500)
        return JSONResponse([m.model_dump(mode="json", by_alias=True) for m in messages])

    async def append_system_message(request: Request) -> Response:
        """POST /api/chat/threads/{id}/system-message - Record a card action."""
        if not request.user.is_authenticated:
            return unauthorized()
        thread_id = _thread_id(request)
        if thread_id is None:
            return _not_found()
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"message": "Invalid JSON body"}, status_code=400)
        try:
            input = MessageInput.model_validate(body)
        except ValidationError:
            return JSONResponse({"message": "content is required"}, status_code=400)

        try:
            message = await threads.append_message(thread_id, request.user.identity, "system", input.content)
        except ThreadNotFoundError:
            return _not_found()
        except Exception as e:
            logger.error("POST /threads/%s/system-message failed: %s", thread_id, e)
            return JSONResponse({"message": "Failed to save message"}, status_code=500)
        return JSONResponse(message.model_dump(mode="json", by_alias=True), status_code=201)

    # ------------------------------------------------------------------
    # Streaming relay
    # ------------------------------------------------------------------

    async def respond(request: Request) -> Response:
        """POST /api/chat/respond - Persist the user message, stream the reply."""
        if not request.user.is_authenticated:
            return unauthorized()
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"message": "Invalid JSON body"}, status_code=400)

        raw_thread_id = body.get("threadId")
        content = body.get("content")
        if not raw_thread_id or not isinstance(content, str):
            return JSONResponse({"message": "threadId and content are required"}, status_code=400)
        if not content.strip():
            return JSONResponse({"message": "content must not be blank"}, status_code=400)
        try:
            thread_id = UUID(str(raw_thread_id))
        except ValueError:
            return _not_found()

        requested = body.get("requestedAgentType")
        agent_type = resolve_agent_type(requested if isinstance(requested, str) else None, content)
        user_id = request.user.identity

        try:
            await threads.append_message(thread_id, user_id, "user", content)
        except ThreadNotFoundError:
            return _not_found()
        except Exception as e:
            logger.error("POST /respond failed to save user message: %s", e)
            return JSONResponse({"message": "Failed to save message"}, status_code=500)

        async def event_generator():
            outcome = TurnOutcome()
            yield _sse({"type": "start"})

            try:
                async for event in runner.stream_reply(thread_id, user_id, agent_type):
                    if event.type == "error":
                        outcome.failed = True
                        break
                    if event.type == "delta":
                        outcome.text_parts.append(event.content)
                    elif event.type == "structured_data":
                        outcome.card = event.data
                    elif event.type == "cta":
                        outcome.cta = event.label
                    yield _sse(event.to_record())
            except Exception as e:
                logger.error("Relay error on thread %s: %s", thread_id, e)
                outcome.failed = True

            if outcome.failed:
                yield _sse(CoachEvent(type="error", message=RELAY_ERROR_MESSAGE).to_record())

            stored = encode_content(outcome.text, outcome.card)
            if stored:
                try:
                    await threads.append_message(thread_id, user_id, "assistant", stored)
                except Exception as e:
                    logger.error("Failed to persist assistant reply on thread %s: %s", thread_id, e)
                    yield _sse(CoachEvent(type="error", message=RELAY_ERROR_MESSAGE).to_record())

            yield _sse({"type": "end"})

            await emit(
                TURN_COMPLETED,
                user_id,
                thread_id,
                agent_type=agent_type,
                user_message=content,
                reply_chars=len(outcome.text),
                card_type=(outcome.card or {}).get("type"),
                failed=outcome.failed,
            )

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    chat_routes = [
        Route("/threads", create_thread, methods=["POST"]),
        Route("/threads", list_threads, methods=["GET"]),
        Route("/threads/{thread_id}", delete_thread, methods=["DELETE"]),
        Route("/threads/{thread_id}/messages", list_messages, methods=["GET"]),
        Route("/threads/{thread_id}/system-message", append_system_message, methods=["POST"]),
        Route("/respond", respond, methods=["POST"]),
    ]

    routes = [
        Mount("/api/chat", routes=chat_routes),
        Route("/health", health),
    ]

    middleware = [
        Middleware(
            AuthenticationMiddleware,
            backend=BearerTokenBackend(settings.token_map, settings.dev_user_id),
            on_error=unauthorized,
        ),
    ]

    kwargs: dict[str, Any] = {"routes": routes, "middleware": middleware}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
