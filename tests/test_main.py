"""Tests for server wiring: component lifecycle and the lazy proxies."""

import asyncio
import uuid

import pytest
from sqlalchemy import select

from coach.events import THREAD_CREATED, Event
from coach.main import _LazyBus, _LazyProxy, create_components, shutdown_components
from coach.storage import models
from coach.storage.database import Database


async def test_components_lifecycle_persists_events(settings):
    components = await create_components(settings)
    try:
        assert components["bus"] is not None
        assert components["runner"]._http is not None
        thread = await components["threads"].create("user-1")
        await components["bus"].emit(Event(type=THREAD_CREATED, user_id="user-1", thread_id=str(thread.id)))
        await asyncio.sleep(0.1)
    finally:
        await shutdown_components(components)

    async with Database(settings) as db:
        async with db.session() as session:
            rows = (await session.execute(select(models.Event))).scalars().all()
    assert [(r.event_type, r.thread_id) for r in rows] == [(THREAD_CREATED, str(thread.id))]


async def test_bus_disabled(settings):
    settings.event_bus_enabled = False
    components = await create_components(settings)
    try:
        assert components["bus"] is None
        assert components["handler_http"] is None
    finally:
        await shutdown_components(components)


def test_lazy_proxy_before_startup():
    proxy = _LazyProxy({}, "threads")
    with pytest.raises(RuntimeError):
        proxy.create


async def test_lazy_proxy_forwards():
    components: dict = {}
    proxy = _LazyProxy(components, "threads")
    components["threads"] = type("Stub", (), {"name": "real"})()
    assert proxy.name == "real"


async def test_lazy_bus_drops_without_bus():
    components: dict = {}
    bus = _LazyBus(components)
    # No bus yet: silently dropped
    await bus.emit(Event(type=THREAD_CREATED, user_id="user-1", thread_id=str(uuid.uuid4())))
