"""Speech Gateway: application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncIterator
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from src.api.admin import router as admin_router
from src.api.deps import get_gateway
from src.api.embedded import router as embedded_router
from src.api.middleware.security_headers import SecurityHeadersMiddleware
from src.api.tts import router as tts_router
from src.api.websocket import router as websocket_router
from src.config import Settings, get_settings
from src.errors import GatewayError, RateLimited
from src.gateway import Gateway
from src.logging.structured_logger import setup_logging
from src.monitoring.metrics import get_metrics

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(settings: Settings | None = None, gateway: Gateway | None = None) -> FastAPI:
    """Build the FastAPI application. The Gateway is created and closed by the lifespan."""
    app_settings = settings or (gateway.settings if gateway is not None else get_settings())

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        instance = gateway or Gateway(app_settings)
        app.state.gateway = instance
        await instance.start()
        try:
            yield
        finally:
            await instance.close()
            logger.info("Speech Gateway stopped")

    app = FastAPI(
        title="Speech Gateway",
        description="Multi-engine text-to-speech gateway",
        version=VERSION,
        lifespan=lifespan,
    )
    app.include_router(tts_router)
    app.include_router(embedded_router)
    app.include_router(admin_router)
    app.include_router(websocket_router)

    # Middleware order (last added = outermost = runs first):
    # SecurityHeaders → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.server.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key", "xi-api-key"],
        expose_headers=[
            "X-Audio-Format",
            "X-Sample-Rate",
            "X-Character-Count",
            "X-Engine",
            "X-Voice",
            "X-Format-Negotiated",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
    )
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(GatewayError, gateway_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]

    app.add_api_route("/health", health_check, methods=["GET"])
    app.add_api_route("/health/ready", readiness_check, methods=["GET"])
    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"])
    return app


# --- Error handlers ---


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimited):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.reset_at),
        }
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(
        {"error": {"code": "VALIDATION_ERROR", "message": "Invalid request", "details": details}},
        status_code=400,
    )


# --- Health ---


async def health_check(request: Request) -> dict[str, Any]:
    """Liveness: the process is up and the gateway is built."""
    gateway = get_gateway(request)
    return {
        "status": "ok",
        "version": VERSION,
        "default_engine": gateway.settings.engines.default_engine,
        "auth_required": gateway.gate.auth_required,
    }


async def readiness_check(request: Request) -> JSONResponse:
    """Readiness check: the key repository and Redis."""
    gateway = get_gateway(request)
    checks: dict[str, Any] = {}

    if gateway.redis is not None:
        try:
            await gateway.redis.ping()
            checks["redis"] = "connected"
        except Exception:
            checks["redis"] = "disconnected"
    else:
        checks["redis"] = "not_configured"

    checks["key_repository"] = "available" if await gateway.keys.is_available() else "unavailable"
    checks["engines"] = {
        engine_id: status.to_dict() for engine_id, status in gateway.registry.engine_statuses().items()
    }

    ready = checks["redis"] != "disconnected" and checks["key_repository"] == "available"
    return JSONResponse({"status": "ready" if ready else "not_ready", **checks}, status_code=200 if ready else 503)


async def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=get_metrics(), media_type="text/plain; charset=utf-8")


# --- Entry point ---


async def start_api_server(app: FastAPI, settings: Settings) -> None:
    config = uvicorn.Config(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.logging.level.lower(),
        ws_ping_interval=20,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def main() -> None:
    """Main application entry point."""
    settings = get_settings()

    # Validate configuration before anything else
    validation = settings.validate_required()
    if not validation.ok:
        for err in validation.errors:
            hint = f" Hint: {err.hint}" if err.hint else ""
            print(f"❌ {err.field}: {err.message}.{hint}")
        print(f"\n{len(validation.errors)} configuration error(s). Fix them and restart.")
        sys.exit(1)

    setup_logging(level=settings.logging.level, format_type=settings.logging.format)
    logger.info(
        "Starting Speech Gateway v%s on %s:%d", VERSION, settings.server.host, settings.server.port
    )
    await start_api_server(create_app(settings), settings)


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)


app = create_app()


if __name__ == "__main__":
    run()
