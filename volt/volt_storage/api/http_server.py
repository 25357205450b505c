"""
Admin HTTP surface for the storage layer.

Exposes the control operations (migrate, testConnection, distribute)
plus read-only storage information over a small JSON API.

Endpoints:
    GET  /v1/health
    GET  /v1/storage/info
    GET  /v1/storage/dependencies
    GET  /v1/storage/export            record counts per collection
    POST /v1/storage/test-connection   {type, options}
    POST /v1/storage/migrate           {targetType, targetOptions, backup, sourceDir}
    POST /v1/storage/distribute

Invariants:
    - Request bodies are validated by pydantic models before any work
    - Storage errors map to stable HTTP statuses (see ERROR_STATUS)
    - Passwords never appear in responses

How to change safely:
    - Keep ERROR_STATUS in sync with errors.py
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from functools import partial
from typing import Any

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .._version import __version__
from ..config import HttpConfig
from ..errors import (
    AdapterUnavailableError,
    AlreadyExistsError,
    ConfigurationError,
    ConstraintViolationError,
    ExpiredError,
    NotFoundError,
    VoltStorageError,
)
from ..migration import MigrationEngine

logger = logging.getLogger(__name__)

ERROR_STATUS: tuple[tuple[type[VoltStorageError], int], ...] = (
    (ConfigurationError, 400),
    (ConstraintViolationError, 400),
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (ExpiredError, 410),
    (AdapterUnavailableError, 503),
)


def status_for(error: VoltStorageError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


class ConnectionTestRequest(BaseModel):
    """Probe a back-end without switching to it."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., description="Storage kind, e.g. postgres")
    options: dict[str, Any] = Field(default_factory=dict, alias="config")


class MigrateRequest(BaseModel):
    """Migrate all data to another back-end."""

    model_config = ConfigDict(populate_by_name=True)

    target_type: str = Field(..., alias="targetType")
    target_options: dict[str, Any] = Field(default_factory=dict, alias="targetOptions")
    backup: bool = Field(default=True, description="Copy the JSON directory first")
    source_dir: str | None = Field(default=None, alias="sourceDir")


def _json_error(message: str, code: str, status: int, details: Any = None) -> web.Response:
    body: dict[str, Any] = {"error": message, "error_code": code}
    if details:
        body["details"] = details
    return web.json_response(body, status=status)


def create_http_app(engine: MigrationEngine, config: HttpConfig | None = None) -> web.Application:
    """Create the admin HTTP application.

    Args:
        engine: Migration engine bound to the live router
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()

    app.router.add_get("/v1/health", partial(handle_health, engine=engine))
    app.router.add_get("/v1/storage/info", partial(handle_storage_info, engine=engine))
    app.router.add_get("/v1/storage/dependencies", partial(handle_dependencies, engine=engine))
    app.router.add_get("/v1/storage/export", partial(handle_export, engine=engine))
    app.router.add_post("/v1/storage/test-connection", partial(handle_test_connection, engine=engine))
    app.router.add_post("/v1/storage/migrate", partial(handle_migrate, engine=engine))
    app.router.add_post("/v1/storage/distribute", partial(handle_distribute, engine=engine))

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ValidationError as e:
            errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
            return _json_error("Invalid request body", "INVALID_REQUEST", 400, errors)
        except VoltStorageError as e:
            status = status_for(e)
            if status >= 500:
                logger.error(f"Storage error on {request.path}: {e.message}", exc_info=True)
            return web.json_response(e.to_dict(), status=status)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return _json_error(str(e), "INTERNAL", 500)

    app.middlewares.append(error_middleware)

    return app


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body"}),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON body must be an object"}),
            content_type="application/json",
        )
    return body


async def handle_health(request: web.Request, engine: MigrationEngine) -> web.Response:
    """Handle GET /v1/health."""
    router = engine.router
    healthy = router.is_initialized
    if healthy:
        try:
            await router.adapter.ping()
        except AdapterUnavailableError as e:
            logger.warning(f"Health check ping failed: {e.message}")
            healthy = False
    return web.json_response(
        {
            "healthy": healthy,
            "version": __version__,
            "storage": router.kind.value if router.is_initialized else None,
            "migrating": engine.is_running,
        },
        status=200 if healthy else 503,
    )


async def handle_storage_info(request: web.Request, engine: MigrationEngine) -> web.Response:
    """Handle GET /v1/storage/info."""
    return web.json_response({"success": True, "current": engine.router.storage_info()})


async def handle_dependencies(request: web.Request, engine: MigrationEngine) -> web.Response:
    """Handle GET /v1/storage/dependencies."""
    return web.json_response({"success": True, "dependencies": engine.check_dependencies()})


async def handle_export(request: web.Request, engine: MigrationEngine) -> web.Response:
    """Handle GET /v1/storage/export - record counts only, never bodies."""
    snapshot = await engine.router.export_all()
    counts = {name: len(data) for name, data in snapshot.items()}
    return web.json_response(
        {"success": True, "type": engine.router.kind.value, "counts": counts}
    )


async def handle_test_connection(request: web.Request, engine: MigrationEngine) -> web.Response:
    """Handle POST /v1/storage/test-connection."""
    body = ConnectionTestRequest.model_validate(await _read_json(request))
    result = await engine.test_connection(body.type, body.options)
    return web.json_response(result.to_dict())


async def handle_migrate(request: web.Request, engine: MigrationEngine) -> web.Response:
    """Handle POST /v1/storage/migrate."""
    body = MigrateRequest.model_validate(await _read_json(request))
    if engine.is_running:
        return _json_error("A migration is already running", "MIGRATION_RUNNING", 409)
    result = await engine.migrate(
        body.target_type,
        body.target_options,
        do_backup=body.backup,
        source_dir=body.source_dir,
    )
    return web.json_response(result.to_dict(), status=200 if result.success else 500)


async def handle_distribute(request: web.Request, engine: MigrationEngine) -> web.Response:
    """Handle POST /v1/storage/distribute."""
    report = await engine.distribute()
    return web.json_response(report.to_dict())
