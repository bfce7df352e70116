"""
Route registration for the orchestrator operator API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Map controller admission errors onto HTTP status codes
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from constants import MAX_CYCLES_PER_RUN, MIN_CYCLES_PER_RUN, RUN_HISTORY_DEFAULT_LIMIT
from events.publisher import EventBus, json_safe
from observability.logger import log_event
from orchestrator.controller import RunController
from orchestrator.errors import PreconditionFailed, RecoveryInProgress, RunBusyError


class StartRunRequest(BaseModel):
    cycles: int = Field(default=5, ge=MIN_CYCLES_PER_RUN, le=MAX_CYCLES_PER_RUN)
    wait: bool = False


class StopRunRequest(BaseModel):
    include_recovery: bool = False


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    def controller() -> RunController:
        return app.state.controller

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/status")
    async def status() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        return json_safe(controller().status())

    @app.post("/runs", status_code=202)
    async def start_run(body: StartRunRequest) -> Any: # pyright: ignore[reportUnusedFunction]
        try:
            state = await controller().start(body.cycles, wait=body.wait)
        except RunBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except RecoveryInProgress as exc:
            return JSONResponse(
                status_code=503,
                content={"detail": str(exc), "retry_after_s": exc.retry_after_s},
                headers={"Retry-After": str(exc.retry_after_s)},
            )
        except PreconditionFailed as exc:
            raise HTTPException(
                status_code=412, detail={"check": exc.check, "message": str(exc)}
            ) from exc

        return json_safe(state.to_dict())

    @app.post("/runs/stop")
    async def stop_run(body: StopRunRequest | None = None) -> dict[str, bool]: # pyright: ignore[reportUnusedFunction]
        include_recovery = body.include_recovery if body else False
        return {"stopped": controller().stop(include_recovery=include_recovery)}

    @app.get("/runs/latest")
    async def latest_run() -> Any: # pyright: ignore[reportUnusedFunction]
        result = controller().latest_result()
        if result is None:
            raise HTTPException(status_code=404, detail="no finished runs")
        return result

    @app.get("/runs")
    async def recent_runs( # pyright: ignore[reportUnusedFunction]
        limit: int = Query(default=RUN_HISTORY_DEFAULT_LIMIT, ge=1, le=100),
    ) -> list[dict[str, Any]]:
        return controller().recent_results(limit)

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        bus: EventBus = app.state.bus
        queue = bus.subscribe()

        async def pump() -> None:
            while True:
                await ws.send_json(await queue.get())

        async def listen() -> None:
            # Client messages are ignored; receiving surfaces disconnects
            while True:
                await ws.receive_text()

        tasks: set[asyncio.Task[None]] = set()
        try:
            await ws.send_json({"topic": "status", "payload": json_safe(controller().status())})

            tasks = {asyncio.create_task(pump()), asyncio.create_task(listen())}
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                task.result()

        except WebSocketDisconnect:
            pass

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            for task in tasks:
                task.cancel()
            bus.unsubscribe(queue)
