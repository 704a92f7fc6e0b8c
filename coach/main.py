"""Coach server entry point.

Initializes all components and starts the server:
  Settings -> Database -> ThreadManager -> EventBus -> CoachRunner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from coach.api.runner import CoachRunner
from coach.chat.threads import ThreadManager
from coach.config import Settings
from coach.events import Event, EventBus
from coach.storage import models
from coach.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()
    await database.create_schema()

    threads = ThreadManager(database)

    bus = None
    handler_http = None
    if settings.event_bus_enabled:
        bus = EventBus()

        async def persist_to_db(event: Event) -> None:
            async with database.session() as session:
                session.add(
                    models.Event(
                        event_type=event.type,
                        user_id=event.user_id,
                        thread_id=event.thread_id,
                        data=event.data,
                        created_at=event.timestamp,
                    )
                )
                await session.commit()

        bus.set_db_persister(persist_to_db)

        handler_http = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10),
        )

        if settings.title_generation_enabled:
            from coach.handlers.thread_titler import ThreadTitler

            ThreadTitler(threads, settings, bus, handler_http)

        await bus.start()

    runner = CoachRunner(threads, settings)
    await runner.start()

    return {
        "database": database,
        "threads": threads,
        "runner": runner,
        "bus": bus,
        "handler_http": handler_http,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down coach...")

    # Bus first so queued turn_completed events still see a live database
    bus = components.get("bus")
    if bus:
        await bus.stop()

    handler_http = components.get("handler_http")
    if handler_http:
        await handler_http.aclose()

    runner = components.get("runner")
    if runner:
        await runner.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Coach shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app.

    Uses Starlette lifespan for component lifecycle management.
    """
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Coach started: model=%s, max_turns=%d, history=%d",
            settings.model,
            settings.max_turns,
            settings.history_messages,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from coach.api.rest import create_app

    return create_app(
        threads=_lazy_component(components, "threads"),
        runner=_lazy_component(components, "runner"),
        database=_lazy_component(components, "database"),
        settings=settings,
        bus=_LazyBus(components),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them. All attribute access is forwarded to the actual
    component once it's available.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized - lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


class _LazyBus:
    """Bus stand-in that drops events when the bus is disabled."""

    def __init__(self, components: dict) -> None:
        self._components = components

    async def emit(self, event: Event) -> None:
        bus = self._components.get("bus")
        if bus is not None:
            await bus.emit(event)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point - parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting coach server")
    logger.info("Model: %s", settings.model)
    if settings.database_url:
        logger.info("Database: %s", settings.database_url.split("@")[-1])
    else:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set - "
            "/api/chat/respond will fail"
        )
    if settings.dev_user_id:
        logger.warning("COACH_DEV_USER_ID is set - unauthenticated requests act as %s", settings.dev_user_id)

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
