"""WebSocket ingestion channel for an instrumented target.

The target keeps one socket open and streams typed JSON messages:

    {"type": "error", "error": {...}, "context": {...}}
    {"type": "action", "action": {...}}
    {"type": "state", "snapshot": {...}}    ("gameState" / "state" accepted)
    {"type": "ping"}                         -> {"type": "pong"}

Malformed messages are dropped with a warning and the socket stays open.
Queued errors live in the collector, so a dropped connection loses nothing.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Any, Literal

import structlog
import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from autofix_loop.config.schema import IngestionConfig
from autofix_loop.core.error_collector import ErrorCollector
from autofix_loop.models.error import ErrorContext, RawError, Severity, SourceLocation
from autofix_loop.utils.async_helpers import DetectionError
from autofix_loop.utils.metrics import MetricsRegistry, get_metrics
from autofix_loop.utils.security import strip_source_url

log = structlog.get_logger()

STARTUP_TIMEOUT = 10.0


# =============================================================================
# Message schema
# =============================================================================


class ErrorPayload(BaseModel):
    """Error as reported by the target's window.onerror / console hook."""

    message: str = Field(min_length=1)
    file: str = Field("unknown", validation_alias=AliasChoices("file", "filename", "source"))
    line: int = Field(0, ge=0, validation_alias=AliasChoices("line", "lineno"))
    column: int = Field(0, ge=0, validation_alias=AliasChoices("column", "colno"))
    stack: str = ""
    component: str | None = None
    severity: Severity | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def upper_severity(cls, v: Any) -> Any:
        """Targets report severity in any case."""
        return v.upper() if isinstance(v, str) else v

    @field_validator("file", mode="after")
    @classmethod
    def strip_url(cls, v: str) -> str:
        """Browsers report script URLs; the collector works with target paths."""
        return strip_source_url(v)


class ErrorMessage(BaseModel):
    type: Literal["error"]
    error: ErrorPayload
    context: dict[str, Any] = {}


class ActionMessage(BaseModel):
    type: Literal["action"]
    action: dict[str, Any]


class StateMessage(BaseModel):
    type: Literal["state", "gameState"]
    snapshot: dict[str, Any] = Field(validation_alias=AliasChoices("snapshot", "state"))


class PingMessage(BaseModel):
    type: Literal["ping"]


IngestionMessage = Annotated[
    ErrorMessage | ActionMessage | StateMessage | PingMessage,
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[IngestionMessage] = TypeAdapter(IngestionMessage)


def parse_message(text: str) -> ErrorMessage | ActionMessage | StateMessage | PingMessage:
    """Parse one frame.

    Raises:
        DetectionError: If the frame is not JSON or not a known message.
    """
    try:
        data = json.loads(text)
    except ValueError as e:
        raise DetectionError(f"Frame is not JSON: {e}") from e
    try:
        return _message_adapter.validate_python(data)
    except PydanticValidationError as e:
        kind = data.get("type") if isinstance(data, dict) else type(data).__name__
        raise DetectionError(f"Invalid '{kind}' message: {e.error_count()} error(s)") from e


def _error_context(context: dict[str, Any]) -> ErrorContext:
    actions = context.get("recent_actions", context.get("userActions")) or []
    snapshot = context.get("state_snapshot", context.get("gameState"))
    extra = {
        k: v
        for k, v in context.items()
        if k not in ("recent_actions", "userActions", "state_snapshot", "gameState")
    }
    return ErrorContext(
        recent_actions=tuple(a for a in actions if isinstance(a, dict)),
        state_snapshot=snapshot if isinstance(snapshot, dict) else None,
        extra=extra,
    )


def dispatch(
    collector: ErrorCollector,
    message: ErrorMessage | ActionMessage | StateMessage | PingMessage,
) -> dict[str, Any] | None:
    """Hand a parsed message to the collector.

    Returns:
        A reply frame, if the message expects one.
    """
    match message:
        case ErrorMessage(error=error, context=context):
            collector.capture(
                RawError(
                    message=error.message,
                    location=SourceLocation(error.file, error.line, error.column),
                    stack_trace=error.stack,
                    component=error.component,
                    severity=error.severity,
                ),
                _error_context(context),
            )
        case ActionMessage(action=action):
            collector.record_action(action)
        case StateMessage(snapshot=snapshot):
            collector.update_state(snapshot)
        case PingMessage():
            return {"type": "pong"}
    return None


# =============================================================================
# App and server
# =============================================================================


def create_app(
    collector: ErrorCollector,
    config: IngestionConfig,
    metrics: MetricsRegistry | None = None,
) -> FastAPI:
    """Build the ingestion app around a collector."""
    metrics = metrics or get_metrics()
    app = FastAPI(title="autofix-loop ingestion")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", **collector.stats}

    @app.websocket(config.path)
    async def ingest(websocket: WebSocket) -> None:
        await websocket.accept()
        log.info("ingestion_client_connected", client=str(websocket.client))
        await websocket.send_json({"type": "init", "message": "autofix-loop collector connected"})
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    message = parse_message(text)
                except DetectionError as e:
                    metrics.messages_dropped.inc()
                    log.warning("ingestion_message_dropped", error=str(e))
                    continue
                reply = dispatch(collector, message)
                if reply is not None:
                    await websocket.send_json(reply)
        except WebSocketDisconnect:
            log.info("ingestion_client_disconnected", queue_size=collector.queue_size)

    return app


class IngestionServer:
    """Runs the ingestion app on uvicorn inside the current event loop.

    Example:
        server = IngestionServer(create_app(collector, config.ingestion), config.ingestion)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, app: FastAPI, config: IngestionConfig) -> None:
        self._config = config
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=config.host,
                port=config.port,
                log_config=None,
                lifespan="off",
            )
        )
        # The CLI owns signal handling
        self._server.install_signal_handlers = lambda: None  # type: ignore[method-assign]
        self._task: asyncio.Task[None] | None = None

    @property
    def url(self) -> str:
        """WebSocket URL the target should connect to."""
        return f"ws://{self._config.host}:{self._config.port}{self._config.path}"

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            raise DetectionError(f"Ingestion server could not start on {self.url}") from e

    async def start(self) -> None:
        """Start serving and wait until the socket is bound."""
        self._task = asyncio.create_task(self._serve())
        deadline = asyncio.get_running_loop().time() + STARTUP_TIMEOUT
        while not self._server.started:
            if self._task.done():
                await self._task
                raise DetectionError(f"Ingestion server exited during startup on {self.url}")
            if asyncio.get_running_loop().time() > deadline:
                raise DetectionError(f"Ingestion server did not start within {STARTUP_TIMEOUT}s")
            await asyncio.sleep(0.05)
        log.info("ingestion_listening", url=self.url)

    async def stop(self) -> None:
        """Stop serving; open sockets are closed."""
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None
        log.info("ingestion_stopped")
