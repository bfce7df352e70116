"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Build shared resources (ledger, run store, event bus, run controller)
- Register routes
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import AppConfig
from events.publisher import EventBus
from ledger.base import LedgerClient
from ledger.factory import build_identities, build_ledger
from observability.logger import log_event
from orchestrator.controller import RunController
from store.run_store import InMemoryRunStore, JsonFileRunStore, RunStore

from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    *,
    controller: RunController | None = None,
    bus: EventBus | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This is the app factory pattern that allows:
    - Testing with an injected controller
    - Environment-specific setup
    - ASGI server compatibility
    """
    config = config or AppConfig.load_from_env()
    bus = bus or EventBus()

    ledger: LedgerClient | None = None
    if controller is None:
        identities = build_identities(config)
        ledger = build_ledger(config, identities)
        controller = RunController.from_config(
            config,
            ledger=ledger,
            identities=identities,
            store=build_run_store(config),
            publisher=bus,
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        log_event({
            "event_type": "APP_STARTED",
            "env": config.env,
            "ledger_backend": config.ledger_backend,
            "network_id": config.ledger_network_id,
        })
        try:
            yield
        finally:
            await controller.shutdown()
            aclose = getattr(ledger, "aclose", None)
            if aclose is not None:
                await aclose()
            log_event({"event_type": "APP_STOPPED"})

    app = FastAPI(title="Escrow Cycle Orchestrator", lifespan=lifespan)

    app.state.config = config
    app.state.controller = controller
    app.state.bus = bus

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    register_routes(app)

    return app


def build_run_store(config: AppConfig) -> RunStore:
    """File-backed when RUN_STORE_PATH is set, in-memory otherwise."""
    if config.run_store_path:
        return JsonFileRunStore(config.run_store_path)
    return InMemoryRunStore()
