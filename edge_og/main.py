from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from edge_og.api.routes import router
from edge_og.config import get_settings
from edge_og.errors import ErrorResponse, GatewayError
from edge_og.logging import clear_context, configure_logging, get_logger, get_request_id, set_request_id
from edge_og.services.gateway import build_gateway
from edge_og.services.kv_store import StoreError

logger = get_logger("edge_og.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    app.state.gateway = build_gateway(settings)
    problems = settings.auth_configuration_errors()
    if problems:
        logger.warning("auth_configuration_incomplete", problems=problems)
    logger.info("gateway_started", environment=settings.environment, store=settings.store_backend)
    yield
    await app.state.gateway.close()


app = FastAPI(
    title="Edge-OG Gateway",
    description=(
        "Authenticated, metered and cache-friendly Open Graph image generation. "
        "Images are rendered from SVG templates and rasterized with Playwright Chromium."
    ),
    version="1.0.0",
    docs_url="/swagger",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    license_info={"name": "MIT"},
    lifespan=lifespan,
)
app.include_router(router)


def _error_response(status_code: int, body: ErrorResponse, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        clear_context()


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    return _error_response(exc.status_code, exc.to_response(get_request_id()), exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg", "")}
        for error in exc.errors()
    ]
    body = ErrorResponse(
        code="VALIDATION_ERROR",
        message="Validation failed",
        details={"errors": errors},
        request_id=get_request_id(),
    )
    return _error_response(400, body)


@app.exception_handler(StoreError)
async def store_error_handler(_: Request, exc: StoreError) -> JSONResponse:
    logger.error("store_unavailable", error=str(exc))
    body = ErrorResponse(
        code="STORE_UNAVAILABLE",
        message="Storage is temporarily unavailable.",
        request_id=get_request_id(),
    )
    return _error_response(500, body)


@app.exception_handler(Exception)
async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error_type=type(exc).__name__)
    body = ErrorResponse(
        code="INTERNAL_ERROR", message="Internal server error", request_id=get_request_id()
    )
    return _error_response(500, body)
