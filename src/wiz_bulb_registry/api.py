"""HTTP API for registering and commanding bulbs."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import Config
from .health import RefreshHealth
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .models import BulbRecord, Identifier
from .registry import Registry, RegistryError

ERROR_STATUS: Dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "already_exists": status.HTTP_409_CONFLICT,
    "storage_failure": status.HTTP_503_SERVICE_UNAVAILABLE,
    "discovery_failed": status.HTTP_503_SERVICE_UNAVAILABLE,
    "timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "unreachable": status.HTTP_502_BAD_GATEWAY,
    "protocol": status.HTTP_502_BAD_GATEWAY,
}


class BulbCreate(BaseModel):
    """Payload for registering a bulb."""

    id: Optional[Union[int, str]] = None
    name: str = Field(min_length=1)
    address: str
    initial_power: Optional[bool] = None
    mac: Optional[str] = None


def _error_response(status_code: int, kind: str, detail: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "error": kind})


def create_app(
    config: Config, registry: Registry, health: Optional[RefreshHealth] = None
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("wiz.api")
    request_logger = get_logger("wiz.api.middleware")
    app = FastAPI(
        title="WiZ Bulb Registry API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled API error", extra={"path": request.url.path})
            response = _error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR, "internal", "Internal server error"
            )
        duration_seconds = time.perf_counter() - start
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        observe_request(request.method, path_template, response.status_code, duration_seconds)
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(RegistryError)
    async def _registry_exc_handler(request: Request, exc: RegistryError) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        request_logger.warning(
            "Registry error",
            extra={"path": request.url.path, "status": status_code, "error": exc.kind, "detail": str(exc)},
        )
        return _error_response(status_code, exc.kind, str(exc))

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        kind = "not_found" if exc.status_code == status.HTTP_404_NOT_FOUND else "http_error"
        return _error_response(exc.status_code, kind, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_request", exc.errors()
        )

    @app.exception_handler(ValueError)
    async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_request", str(exc))

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": "ok"}
        if health is not None:
            body["refresh"] = await health.snapshot()
        return body

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.post("/bulb", status_code=status.HTTP_201_CREATED)
    async def add_bulb(payload: BulbCreate) -> Dict[str, Any]:
        stored = await registry.add(BulbRecord.from_mapping(payload.model_dump()))
        return stored.as_dict()

    @app.get("/bulbs")
    async def list_bulbs() -> List[Dict[str, Any]]:
        return [record.as_dict() for record in await registry.records()]

    # Must be declared before /bulb/{name} so "discover" is not taken as a name.
    @app.get("/bulb/discover")
    async def discover() -> List[Dict[str, Any]]:
        found = await registry.discover_unknown_bulbs()
        return [item.as_dict() for item in found]

    @app.get("/bulb/on/{bulb_id}")
    async def turn_on(bulb_id: str) -> Dict[str, Any]:
        return (await registry.turn_on_by_id(bulb_id)).as_dict()

    @app.get("/bulb/off/{bulb_id}")
    async def turn_off(bulb_id: str) -> Dict[str, Any]:
        return (await registry.turn_off_by_id(bulb_id)).as_dict()

    @app.post("/bulb/{bulb_id}/toggle")
    async def toggle(bulb_id: str) -> Dict[str, Any]:
        return (await registry.toggle_by_id(bulb_id)).as_dict()

    @app.get("/bulb/{bulb_id}/state")
    async def state(bulb_id: str) -> Dict[str, Any]:
        key = Identifier.parse(bulb_id)
        power = await registry.query_state_by_id(key)
        return {"id": key.to_json(), "power": power}

    @app.delete("/bulb/{bulb_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def remove(bulb_id: str) -> Response:
        await registry.remove(bulb_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/bulb/{name}")
    async def find_by_name(name: str) -> Dict[str, Any]:
        record = await registry.find_by_name(name)
        if record is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"No bulb named {name!r}"
            )
        return record.as_dict()

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(
        self, config: Config, registry: Registry, health: Optional[RefreshHealth] = None
    ) -> None:
        self.config = config
        self.registry = registry
        self.health = health
        self.logger = get_logger("wiz.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.registry, self.health)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
