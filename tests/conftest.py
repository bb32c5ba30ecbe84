"""
tests/conftest.py -- Shared test fixtures for the trade-in API integration tests.

This module provides:
  - _make_test_stores(): isolated trade-in DB + valuation registry per module
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_client: (client, controller) for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Environment must be set before api.main is imported: TrustedHostMiddleware
and the rate limiter read settings at import time, and TestClient sends
Host: testserver.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from pathlib import Path

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from cache.store import ValuationCache
from core.catalog import DeviceCatalog
from core.valuation import ValuationEngine
from shipping.carriers import MockCarrier
from tradein.lifecycle import TradeInController
from tradein.store import TradeInStore


def _make_test_stores(db_suffix: str, tmp_dir: Path) -> tuple[TradeInStore, ValuationCache]:
    """Create an isolated trade-in store and valuation registry.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'health').
        tmp_dir:   Directory for the valuation registry's SQLite file.
    """
    store = TradeInStore(db_url=f"sqlite:///file:test_tradeins_{db_suffix}?mode=memory&cache=shared&uri=true")
    valuations = ValuationCache(db_path=tmp_dir / f"valuations_{db_suffix}.db")
    return store, valuations


def make_controller(store: TradeInStore, valuations: ValuationCache, **kwargs) -> TradeInController:
    """Controller over the default catalog and a fresh mock carrier."""
    engine = ValuationEngine(DeviceCatalog())
    return TradeInController(store, valuations, engine, MockCarrier(), **kwargs)


def _patch_lifespan(controller: TradeInController):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can cancel a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.provider = controller.provider
        app.state.valuations = controller.valuations
        app.state.store = controller.store
        app.state.carrier = controller.carrier
        app.state.controller = controller
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, TradeInController], None, None]:
    """Yield (client, controller) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers against isolated stores. The controller is
    returned too, so tests can reach its carrier and stores directly.
    """
    store, valuations = _make_test_stores("api", tmp_path_factory.mktemp("api"))
    controller = make_controller(store, valuations)

    app.router.lifespan_context = _patch_lifespan(controller)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, controller

    store.close()
    valuations.close()
