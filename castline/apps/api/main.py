from __future__ import annotations

import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from castline.apps.api.errors import (
    castline_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from castline.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from castline.apps.api.routes.broadcasts import router as broadcasts_router
from castline.apps.api.routes.health import router as health_router
from castline.core.config import get_settings
from castline.core.errors import CastlineError
from castline.core.logging import configure_logging
from castline.services.telemetry import record_request


_PUBLIC_PATHS = frozenset({f"/{API_VERSION}/health"})

# Starlette picks handlers by exception MRO, not registration order.
_EXCEPTION_HANDLERS = (
    (CastlineError, castline_exception_handler),
    (StarletteHTTPException, http_exception_handler),
    (HTTPException, http_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (Exception, unhandled_exception_handler),
)


async def _track_request(request: Request, call_next):
    # Stamp the request id before routing so error handlers and audit rows share it.
    request_id = get_request_id(request)
    started = time.monotonic()
    response = await call_next(request)
    record_request(
        path=request.url.path,
        status_code=response.status_code,
        latency_ms=(time.monotonic() - started) * 1000.0,
    )
    response.headers.setdefault(REQUEST_ID_HEADER, request_id)
    return response


def _bearer_schema(app: FastAPI, title: str) -> dict:
    schema = get_openapi(title=title, version=API_VERSION, routes=app.routes)
    schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
    schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
    for path, operations in schema.get("paths", {}).items():
        if path in _PUBLIC_PATHS:
            continue
        for operation in operations.values():
            operation.setdefault("security", [{"BearerAuth": []}])
    return schema


def _mount_docs(app: FastAPI, title: str) -> None:
    schema_url = f"/{API_VERSION}/openapi.json"

    @app.get(schema_url, include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(f"/{API_VERSION}/docs", include_in_schema=False)
    async def versioned_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=schema_url, title=f"{title} {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"/{API_VERSION}/docs")

    def cached_openapi() -> dict:
        if app.openapi_schema is None:
            app.openapi_schema = _bearer_schema(app, title)
        return app.openapi_schema

    app.openapi = cached_openapi


def create_app() -> FastAPI:
    configure_logging()
    title = f"{get_settings().app_name} API"
    app = FastAPI(title=title)
    app.middleware("http")(_track_request)
    for exc_type, handler in _EXCEPTION_HANDLERS:
        app.add_exception_handler(exc_type, handler)
    for router in (health_router, broadcasts_router):
        app.include_router(router, prefix=f"/{API_VERSION}")
    _mount_docs(app, title)
    return app


app = create_app()
