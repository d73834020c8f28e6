"""FastAPI server for programmatic marketplace access."""

from __future__ import annotations

import asyncio
import functools
import json
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Any

import click
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from agentmarket import __version__
from agentmarket.config import Settings, load_settings
from agentmarket.discovery.models import ServiceDescriptor, ServiceQuery
from agentmarket.engine import events
from agentmarket.engine.events import EventBus
from agentmarket.engine.orchestrator import OrchestrationResult
from agentmarket.errors import InvalidDescriptor, MarketplaceError, NotFound
from agentmarket.log import configure_logging, get_logger
from agentmarket.marketplace import Marketplace

logger = get_logger("api")

HEARTBEAT_SECONDS = 15.0
FINISHED_LIMIT = 100  # background results kept in memory
TERMINAL_EVENTS = frozenset({events.ORCHESTRATION_COMPLETED, events.ORCHESTRATION_ERROR})

_STATUS_BY_CODE = {
    InvalidDescriptor.code: 400,
    NotFound.code: 404,
}


def create_app(settings: Settings | None = None, marketplace: Marketplace | None = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Runtime settings (default: load_settings())
        marketplace: Pre-built marketplace, e.g. with a test wallet and client
    """
    market = marketplace or Marketplace(settings)
    running: dict[str, asyncio.Task[OrchestrationResult]] = {}
    finished: dict[str, dict[str, Any]] = {}
    start_time = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        for task in list(running.values()):
            task.cancel()
        await market.close()

    app = FastAPI(
        title="agentmarket API",
        version=__version__,
        description="Discovery, pay-to-call invocation and orchestration of agent services",
        lifespan=lifespan,
    )
    app.state.marketplace = market
    app.state.running = running
    app.state.finished = finished

    def on_done(orchestration_id: str, task: asyncio.Task[OrchestrationResult]) -> None:
        running.pop(orchestration_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("background orchestration %s failed: %r", orchestration_id, error)
            finished[orchestration_id] = {
                "orchestration_id": orchestration_id,
                "status": "failed",
                "error": f"{type(error).__name__}: {error}",
            }
        else:
            finished[orchestration_id] = _jsonable(task.result().to_dict())
        while len(finished) > FINISHED_LIMIT:
            finished.pop(next(iter(finished)))

    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
        return JSONResponse(status_code=_STATUS_BY_CODE.get(exc.code, 422), content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "ValueError", "message": str(exc)})

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - start_time
        stats = market.registry.get_stats()
        return {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(uptime, 1),
            "active_services": stats["active_services"],
            "running_orchestrations": len(running),
        }

    @app.get("/api/services")
    async def list_services(
        capability: list[str] | None = Query(default=None),
        text: str | None = None,
        min_rating: float | None = None,
        max_price: str | None = None,
        limit: int = 20,
        offset: int = 0,
        include_retired: bool = False,
    ) -> dict[str, Any]:
        """Search services. ``capability`` may be repeated or comma-separated."""
        tags = [c.strip() for value in capability or [] for c in value.split(",") if c.strip()]
        query = ServiceQuery(
            text=text,
            capabilities=tags,
            min_rating=min_rating,
            max_price=_amount(max_price) if max_price else None,
            limit=limit,
            offset=offset,
            include_retired=include_retired,
        )
        services = market.search(query)
        return {
            "services": [s.to_dict() for s in services],
            "count": len(services),
            "limit": limit,
            "offset": offset,
        }

    @app.post("/api/services", status_code=201)
    async def register_service(request: dict[str, Any]) -> dict[str, Any]:
        """Publish a service descriptor."""
        service = market.registry.register(ServiceDescriptor.from_dict(request))
        return service.to_dict()

    @app.get("/api/services/{service_id}")
    async def get_service(service_id: str) -> dict[str, Any]:
        service = market.registry.get(service_id)
        data = service.to_dict()
        data["reviews"] = market.registry.list_reviews(service_id)
        return data

    @app.post("/api/services/{service_id}/rate")
    async def rate_service(service_id: str, request: dict[str, Any]) -> dict[str, Any]:
        """Append a 1-5 rating."""
        score = request.get("score")
        if not isinstance(score, int):
            raise ValueError("score must be an integer between 1 and 5")
        reputation = market.registry.rate(service_id, score, request.get("review"))
        return {"service_id": service_id, "reputation": reputation.to_dict()}

    @app.post("/api/orchestrate")
    async def orchestrate(request: dict[str, Any]) -> JSONResponse:
        """
        Run an orchestration.

        Body: ``{goal, budget, max_concurrent?, timeout?, wait?}``. With
        ``wait: false`` the orchestration runs in the background and the
        response is 202 with its id; follow it through /api/stream.
        """
        goal = request.get("goal", "")
        if not goal:
            raise ValueError("goal is required")
        if request.get("budget") is None:
            raise ValueError("budget is required")
        budget = _amount(request["budget"])
        orchestration_id = f"orch-{uuid.uuid4().hex[:8]}"

        coro = market.orchestrate(
            goal,
            budget,
            max_concurrent=request.get("max_concurrent"),
            timeout=request.get("timeout"),
            orchestration_id=orchestration_id,
        )
        if request.get("wait", True):
            result = await coro
            return JSONResponse(content=_jsonable(result.to_dict()))

        task = asyncio.create_task(coro)
        running[orchestration_id] = task
        task.add_done_callback(functools.partial(on_done, orchestration_id))
        return JSONResponse(
            status_code=202,
            content={"orchestration_id": orchestration_id, "status": "started"},
        )

    @app.get("/api/orchestrations")
    async def list_orchestrations(limit: int = 20) -> dict[str, Any]:
        """Archived orchestrations, most recent first."""
        archived: list[dict[str, Any]] = []
        if market.ledger_store is not None:
            await market.ledger_store.open()
            archived = await market.ledger_store.list_recent(limit)
        return {"orchestrations": archived, "running": list(running), "count": len(archived)}

    @app.get("/api/orchestrations/{orchestration_id}")
    async def get_orchestration(orchestration_id: str) -> dict[str, Any]:
        if orchestration_id in running:
            return {"orchestration_id": orchestration_id, "status": "running"}
        if market.ledger_store is not None:
            await market.ledger_store.open()
            snapshot = await market.ledger_store.get(orchestration_id)
            if snapshot is not None:
                return snapshot
        if orchestration_id in finished:
            return finished[orchestration_id]
        raise NotFound(
            f"orchestration {orchestration_id} not found", {"orchestration_id": orchestration_id}
        )

    @app.get("/api/spending")
    async def spending() -> dict[str, Any]:
        stats = await market.spending()
        return stats.to_dict()

    @app.get("/api/stream")
    async def stream(orchestration_id: str | None = None) -> StreamingResponse:
        """SSE endpoint for live orchestration events."""
        return StreamingResponse(
            sse_events(market.event_bus, orchestration_id),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    return app


async def sse_events(
    bus: EventBus,
    orchestration_id: str | None = None,
    heartbeat: float = HEARTBEAT_SECONDS,
) -> AsyncGenerator[str, None]:
    """
    Render bus events as server-sent events.

    Following a single orchestration ends the stream after its terminal event;
    the unfiltered stream runs until the client disconnects.
    """
    subscription = bus.subscribe(orchestration_id)
    try:
        while True:
            try:
                event = await asyncio.wait_for(subscription.queue.get(), heartbeat)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            payload = json.dumps(_jsonable(event.to_dict()))
            yield f"id: {event.sequence}\nevent: {event.type}\ndata: {payload}\n\n"
            if orchestration_id is not None and event.type in TERMINAL_EVENTS:
                return
    finally:
        subscription.close()


def _amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value).strip().lstrip("$"))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"amount must be finite: {value!r}")
    return amount


def _jsonable(data: Any) -> Any:
    return json.loads(json.dumps(data, default=str))


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
def main(port: int, host: str, log_level: str | None) -> None:
    """Start the agentmarket API server."""
    import uvicorn

    settings = load_settings(log_level=log_level)
    configure_logging(settings.log_level)
    logger.info("serving agentmarket API on %s:%d", host, port)
    uvicorn.run(create_app(settings), host=host, port=port)
