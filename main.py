import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import Response, StreamingResponse

from smibar.config import Settings, init_logging, settings
from smibar.events import EVENT_ERROR, EVENT_META, EVENT_SNAPSHOT, Event, EventHub
from smibar.logging_config import set_request_id
from smibar.metrics import ERRORS_TOTAL, REQUEST_DURATION, REQUESTS_TOTAL
from smibar.remote_client import RemoteMetricsClient
from smibar.schemas import (
    ConnectionMetaResponse,
    ConnectionRequest,
    ConnectionTestResponse,
    GPUListResponse,
    SSHConfigConnection,
    TrayTitleResponse,
    validate_display_mode,
)
from smibar.ssh_config import SSHConfigResolver
from smibar.supervisor import BackoffPolicy, ConnectionSupervisor
from smibar.tray import LoggingPresenter, TrayController

SSE_KEEPALIVE_SECONDS = 15.0


class AppState:
    def __init__(self):
        self.hub = EventHub()
        self.supervisor: ConnectionSupervisor | None = None
        self.resolver: SSHConfigResolver | None = None
        self.tray: TrayController | None = None
        self.start_time: datetime = datetime.now(timezone.utc)


app_state = AppState()
logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    return settings


def get_supervisor() -> ConnectionSupervisor:
    if app_state.supervisor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Poll worker not initialized",
        )
    return app_state.supervisor


def build_supervisor(config: Settings, hub: EventHub) -> ConnectionSupervisor:
    client = RemoteMetricsClient(
        ssh_binary=config.ssh_binary,
        connect_timeout=config.ssh_connect_timeout,
        command_timeout=config.ssh_command_timeout,
        nvidia_smi_path=config.nvidia_smi_path,
    )
    policy = BackoffPolicy(
        schedule=tuple(config.backoff_schedule),
        error_after_failures=config.error_after_failures,
    )
    return ConnectionSupervisor(
        client=client,
        sink=hub,
        policy=policy,
        poll_interval=config.poll_interval,
    )


async def startup_event():
    init_logging()
    logger.info("Starting smibar...")

    app_state.supervisor = build_supervisor(settings, app_state.hub)
    app_state.resolver = SSHConfigResolver(config_path=settings.ssh_config_path)
    app_state.tray = TrayController(
        app_state.supervisor, LoggingPresenter(), mode=settings.tray_display_mode
    )
    app_state.hub.add_listener(app_state.tray.on_event)

    app_state.supervisor.start()
    if settings.initial_target:
        app_state.supervisor.set_target(settings.initial_target, settings.initial_port)


async def shutdown_event():
    logger.info("Shutting down smibar...")
    if app_state.supervisor:
        loop = asyncio.get_running_loop()
        # Let an in-flight query finish or hit its own timeout.
        await loop.run_in_executor(
            None, app_state.supervisor.stop, settings.ssh_command_timeout + 1
        )
    if app_state.tray:
        app_state.hub.remove_listener(app_state.tray.on_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup_event()
    yield
    await shutdown_event()


app = FastAPI(
    title="smibar",
    description="Remote NVIDIA GPU monitor over ssh",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    set_request_id(request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    endpoint = request.url.path
    REQUESTS_TOTAL.labels(endpoint=endpoint, method=request.method).inc()
    REQUEST_DURATION.labels(endpoint=endpoint).observe(time.time() - start_time)
    if response.status_code >= 400:
        ERRORS_TOTAL.labels(endpoint=endpoint, error_type=str(response.status_code)).inc()
    return response


@app.get("/")
async def root():
    return {
        "status": "running",
        "service": "smibar",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    worker = app_state.supervisor
    return {
        "status": "healthy",
        "poll_worker_running": bool(worker and worker.is_running),
        "uptime_seconds": int((datetime.now(timezone.utc) - app_state.start_time).total_seconds()),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    from smibar.metrics import generate_metrics

    return Response(content=generate_metrics(), media_type="text/plain; version=0.0.4")


@app.get("/v1/connection", response_model=ConnectionMetaResponse)
async def get_connection(supervisor: Annotated[ConnectionSupervisor, Depends(get_supervisor)]):
    return supervisor.metadata().to_dict()


@app.put("/v1/connection", response_model=ConnectionMetaResponse)
async def set_connection(
    body: ConnectionRequest,
    supervisor: Annotated[ConnectionSupervisor, Depends(get_supervisor)],
):
    """SetConnection: an empty target idles the session."""
    supervisor.set_target(body.target, body.port)
    return supervisor.metadata().to_dict()


@app.post("/v1/connection/test", response_model=ConnectionTestResponse)
async def test_connection(
    body: ConnectionRequest,
    supervisor: Annotated[ConnectionSupervisor, Depends(get_supervisor)],
):
    """One-shot probe; does not change the active session."""
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, supervisor.test_target, body.target, body.port)
    return result.to_dict()


@app.post("/v1/connection/retry")
async def retry_connection(supervisor: Annotated[ConnectionSupervisor, Depends(get_supervisor)]):
    supervisor.retry_now()
    return {"status": "scheduled"}


@app.get("/v1/connections/ssh-config", response_model=list[SSHConfigConnection])
async def list_ssh_config_connections(config: Annotated[Settings, Depends(get_settings)]):
    """Aliases from ~/.ssh/config. Always answers, with an empty list on any failure."""
    resolver = app_state.resolver or SSHConfigResolver(config_path=config.ssh_config_path)
    loop = asyncio.get_running_loop()
    try:
        candidates = await loop.run_in_executor(None, resolver.discover)
    except Exception as e:
        logger.error(f"ssh config discovery failed: {e}", exc_info=True)
        return []
    return [c.to_dict() for c in candidates]


@app.get("/v1/gpus", response_model=GPUListResponse)
async def get_gpus(supervisor: Annotated[ConnectionSupervisor, Depends(get_supervisor)]):
    """Latest snapshot, only while the session has data (live or stale)."""
    meta = supervisor.metadata()
    if meta.status.value not in ("live", "stale"):
        return {"gpus": []}
    return {"gpus": app_state.hub.latest_payload(EVENT_SNAPSHOT, [])}


@app.get("/v1/tray", response_model=TrayTitleResponse)
async def get_tray_title(mode: Annotated[str | None, Query()] = None):
    if app_state.tray is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Tray controller not initialized",
        )
    if mode is not None:
        try:
            mode = validate_display_mode(mode)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    mode = mode or app_state.tray.mode
    return {"mode": mode, "title": app_state.tray.title(mode)}


def format_sse(event: Event) -> str:
    return f"event: {event.name}\ndata: {json.dumps(event.payload)}\n\n"


async def stream_events(request: Request, hub: EventHub) -> AsyncIterator[str]:
    queue = hub.subscribe()
    try:
        # Replay current state so a new client does not wait for the next tick.
        for name in (EVENT_META, EVENT_SNAPSHOT, EVENT_ERROR):
            latest = hub.latest(name)
            if latest is not None:
                yield format_sse(latest)

        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
    finally:
        hub.unsubscribe(queue)


@app.get("/v1/events")
async def events(request: Request):
    """Server-Sent Events: gpu:data, gpu:error and gpu:conn_meta."""
    return StreamingResponse(
        stream_events(request, app_state.hub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


def main() -> None:
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
