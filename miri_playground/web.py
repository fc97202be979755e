"""
HTTP intake for the Miri playground using FastAPI.

Endpoints:

    POST   /execute              run a snippet (default mode: miri)
    POST   /compile              build a snippet, optionally emitting asm or LLVM IR
    POST   /format               rustfmt a snippet and return the result
    DELETE /requests/{id}        cancel a queued or running request
    GET    /health               service status and statistics

Caller errors answer 400, back-pressure 429 and infrastructure failures 500.
Sandboxed-program failures are ordinary 200 responses carrying their tag.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError as BodyValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict

from .core.config import PlaygroundConfig
from .core.exceptions import (
    DispatcherBusyError,
    PlaygroundError,
    RequestValidationError,
)
from .core.logging import get_logger
from .execution.engine import PlaygroundService
from .execution.formatter import format_error

logger = get_logger(__name__)


class ExecuteBody(BaseModel):
    """JSON body accepted by ``/execute`` and ``/compile``."""

    model_config = ConfigDict(extra="forbid")

    code: str
    mode: str | None = None
    request_id: str | None = None
    profile: str | None = None
    tests: bool = False
    timeout_seconds: float | None = None
    memory_limit_mb: int | None = None
    channel: str | None = None
    target: str | None = None


class FormatBody(BaseModel):
    """JSON body accepted by ``/format``."""

    model_config = ConfigDict(extra="forbid")

    code: str
    request_id: str | None = None
    channel: str | None = None
    timeout_seconds: float | None = None
    memory_limit_mb: int | None = None


def create_app(
    config: PlaygroundConfig | None = None,
    service: PlaygroundService | None = None,
) -> FastAPI:
    """
    Create a configured FastAPI app.

    When ``service`` is omitted one is built from ``config`` on startup and
    closed on shutdown.
    """
    config = config or (service.config if service is not None else PlaygroundConfig.load())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.service is None
        if owned:
            logger.info("Starting playground service")
            app.state.service = PlaygroundService(config)
        yield
        if owned:
            logger.info("Stopping playground service")
            await run_in_threadpool(app.state.service.close)
            app.state.service = None

    app = FastAPI(title="Miri Playground", lifespan=lifespan)
    app.state.config = config
    app.state.service = service

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=format_error(exc))

    @app.exception_handler(BodyValidationError)
    async def invalid_body(request: Request, exc: BodyValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": details or "Invalid request body"})

    @app.exception_handler(DispatcherBusyError)
    async def busy(request: Request, exc: DispatcherBusyError):
        record = format_error(exc)
        record["in_flight"] = exc.in_flight
        record["waiting"] = exc.waiting
        return JSONResponse(status_code=429, content=record)

    @app.exception_handler(PlaygroundError)
    async def infrastructure_error(request: Request, exc: PlaygroundError):
        logger.error(f"Request failed: {exc}")
        return JSONResponse(status_code=500, content=format_error(exc))

    @app.post("/execute")
    async def execute(body: ExecuteBody, request: Request) -> dict[str, Any]:
        return await _execute(request, body.model_dump(exclude_none=True))

    @app.post("/compile")
    async def compile_only(body: ExecuteBody, request: Request) -> dict[str, Any]:
        payload = body.model_dump(exclude_none=True)
        payload["mode"] = "build"
        return await _execute(request, payload)

    @app.post("/format")
    async def format_source(body: FormatBody, request: Request) -> dict[str, Any]:
        payload = body.model_dump(exclude_none=True)
        payload["mode"] = "format"
        return await _execute(request, payload)

    @app.delete("/requests/{request_id}")
    async def cancel(request_id: str, request: Request):
        cancelled = _service(request).cancel(request_id)
        if not cancelled:
            return JSONResponse(
                status_code=404,
                content={"error": f"No request '{request_id}' is queued or running"},
            )
        return {"request_id": request_id, "cancelled": True}

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Service status, limits and execution statistics."""
        return _service(request).health()

    if config.server.ui_root:
        ui_root = Path(config.server.ui_root)
        if ui_root.is_dir():
            app.mount("/", StaticFiles(directory=str(ui_root), html=True), name="ui")
        else:
            logger.warning(f"UI root {ui_root} is not a directory; static UI disabled")

    return app


async def _execute(request: Request, payload: dict[str, Any]) -> dict[str, Any]:
    # Execution blocks until the process tree finishes; keep it off the event loop.
    return await run_in_threadpool(_service(request).execute, payload)


def _service(request: Request) -> PlaygroundService:
    service = request.app.state.service
    if service is None:
        raise PlaygroundError("Playground service is not running")
    return service


def serve(config: PlaygroundConfig) -> None:
    """Run the HTTP intake with uvicorn until interrupted."""
    import uvicorn

    app = create_app(config)
    logger.info(f"Listening on http://{config.server.address}:{config.server.port}")
    uvicorn.run(
        app,
        host=config.server.address,
        port=int(config.server.port),
        log_level=config.log_level.lower(),
    )
