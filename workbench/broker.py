"""HTTP/WebSocket broker exposing workbench commands to the front end."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from workbench import __version__
from workbench.commands import Workbench
from workbench.events import EventSink
from workbench.requirements import MIN_DISK_GB, MIN_RAM_GB
from workbench.schemas import (
    CommandResult,
    EnvironmentStatus,
    ErrorResponse,
    Event,
    HealthResponse,
    ModelList,
    PortConfig,
    PullRequest,
    RequirementsReport,
    ServiceName,
)

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Per-connection buffer before a slow WebSocket client starts losing events
WS_QUEUE_SIZE = 1000

# Failed command kinds that map to something other than 409
_STATUS_BY_KIND = {
    "BinaryNotFound": 404,
    "Unreachable": 503,
    "SpawnFailed": 500,
    "InstallFailed": 500,
}


class EventBroadcaster:
    """Fans sink events out to connected WebSocket clients.

    Sink callbacks run on the dispatcher thread; they hand events to each
    client's asyncio queue and never wait on the socket.
    """

    def __init__(self, sink: EventSink):
        self.sink = sink

    @asynccontextmanager
    async def connect(self):
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=WS_QUEUE_SIZE)

        def enqueue(payload: dict) -> None:
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                pass

        def on_event(event: Event) -> None:
            loop.call_soon_threadsafe(enqueue, event.model_dump(mode="json"))

        unsubscribe = self.sink.subscribe(on_event)
        try:
            yield queue
        finally:
            unsubscribe()


def _raise_for(result: CommandResult | ModelList, default_status: int = 409) -> CommandResult | ModelList:
    if result.ok:
        return result
    status = _STATUS_BY_KIND.get(result.error_kind or "", default_status)
    raise HTTPException(status_code=status, detail=result.message)


def get_workbench(request: Request) -> Workbench:
    return request.app.state.workbench


def create_app(workbench: Workbench | None = None) -> FastAPI:
    """Build the broker around a Workbench.

    Args:
        workbench: Session to serve; one is created on startup and closed on
            shutdown when omitted

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = workbench is None
        app.state.workbench = workbench or Workbench()
        app.state.broadcaster = EventBroadcaster(app.state.workbench.sink)
        logger.info("Workbench broker started")
        yield
        if owned:
            app.state.workbench.close()
        logger.info("Workbench broker stopped")

    app = FastAPI(
        title="Workbench Broker",
        description="Service lifecycle and model download commands for the local workbench",
        version=__version__,
        lifespan=lifespan,
    )

    @app.post("/ports/allocate", response_model=PortConfig)
    def allocate_ports(wb: Workbench = Depends(get_workbench)) -> PortConfig:
        """Allocate and persist the session port pair."""
        return wb.allocate_ports()

    @app.post("/services/{name}/launch", response_model=CommandResult)
    def launch_service(
        name: ServiceName,
        replace: bool = Query(False, description="Stop a running instance first"),
        wb: Workbench = Depends(get_workbench),
    ) -> CommandResult:
        return _raise_for(wb.launch_service(name, replace=replace))

    @app.post("/services/{name}/stop", response_model=CommandResult)
    def stop_service(name: ServiceName, wb: Workbench = Depends(get_workbench)) -> CommandResult:
        return _raise_for(wb.stop_service(name))

    @app.get("/services/{name}/health", response_model=CommandResult)
    def check_service_health(name: ServiceName, wb: Workbench = Depends(get_workbench)) -> CommandResult:
        return _raise_for(wb.check_service_health(name))

    @app.post("/models/pull", response_model=CommandResult)
    def pull_model(request: PullRequest, wb: Workbench = Depends(get_workbench)) -> CommandResult:
        """Start a model pull; progress arrives over /ws/events."""
        return _raise_for(wb.pull_model(request.target))

    @app.post("/models/cancel", response_model=CommandResult)
    def cancel_download(wb: Workbench = Depends(get_workbench)) -> CommandResult:
        return _raise_for(wb.cancel_download())

    @app.get("/models", response_model=ModelList)
    def list_models(wb: Workbench = Depends(get_workbench)) -> ModelList:
        """Installed models; a missing binary is a 404, other failures a 500."""
        return _raise_for(wb.list_models(), default_status=500)

    @app.post("/install/n8n", response_model=CommandResult)
    def install_n8n(wb: Workbench = Depends(get_workbench)) -> CommandResult:
        """Install n8n globally; returns once npm exits."""
        return _raise_for(wb.install_n8n())

    @app.get("/environment", response_model=EnvironmentStatus)
    def validate_environment(wb: Workbench = Depends(get_workbench)) -> EnvironmentStatus:
        return wb.validate_environment()

    @app.get("/requirements", response_model=RequirementsReport)
    def check_requirements(
        min_ram_gb: float = Query(MIN_RAM_GB, ge=0),
        min_disk_gb: float = Query(MIN_DISK_GB, ge=0),
        wb: Workbench = Depends(get_workbench),
    ) -> RequirementsReport:
        return wb.check_requirements(min_ram_gb, min_disk_gb)

    @app.post("/platform/ensure", response_model=CommandResult)
    def ensure_platform(wb: Workbench = Depends(get_workbench)) -> CommandResult:
        """Launch n8n unless its port already answers."""
        return _raise_for(wb.ensure_platform())

    @app.post("/setup", response_model=CommandResult)
    def setup(launch: bool = False, wb: Workbench = Depends(get_workbench)) -> CommandResult:
        """Check the toolchain, install n8n if missing, optionally launch it."""
        return _raise_for(wb.setup(launch=launch))

    @app.get("/events", response_model=list[Event])
    def recent_events(
        limit: int = Query(100, ge=0, le=1000),
        wb: Workbench = Depends(get_workbench),
    ) -> list[Event]:
        """Recently delivered events, oldest first."""
        return wb.sink.recent(limit)

    @app.get("/health", response_model=HealthResponse)
    def health(wb: Workbench = Depends(get_workbench)) -> HealthResponse:
        return HealthResponse(
            broker="healthy",
            running_services=wb.launcher.running_services(),
            download_active=wb.downloads.is_active,
        )

    @app.websocket("/ws/events")
    async def events_socket(ws: WebSocket) -> None:
        """Stream component-log and component-progress events."""
        broadcaster: EventBroadcaster = ws.app.state.broadcaster

        async def forward(queue: asyncio.Queue) -> None:
            while True:
                await ws.send_json(await queue.get())

        async with broadcaster.connect() as queue:
            await ws.accept()
            logger.info("Event stream client connected")
            sender = asyncio.create_task(forward(queue))
            try:
                # Client messages are ignored; receiving detects the disconnect
                while True:
                    await ws.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                sender.cancel()
                logger.info("Event stream client disconnected")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                detail=str(exc),
                error_code="INTERNAL_ERROR",
            ).model_dump(),
        )

    return app
