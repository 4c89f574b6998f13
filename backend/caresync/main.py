from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.responses import Response
from sqlalchemy import text
from starlette.middleware.cors import CORSMiddleware

from .db import check_db_connection, db_backend_name, get_db, init_db, purge_resolved_security_events
from .guard import RateLimitExceeded, rate_limit_exceeded_handler, request_guard_middleware
from .logging_utils import configure_logging
from .metrics import CONTENT_TYPE_LATEST, generate_latest
from .routers.performance import router as performance_router
from .routers.quality_control import router as quality_control_router
from .routers.rate_limits import router as rate_limits_router
from .routers.security import router as security_router
from .services import GuardServices, build_services

load_dotenv()
configure_logging()
logger = logging.getLogger("caresync.app")


def create_app(services: Optional[GuardServices] = None) -> FastAPI:
    """Composition root: every limiter and monitor hangs off ``app.state.services``."""
    services = services or build_services()

    app = FastAPI(title="CareSync Guard API", version="1.0.0")
    app.state.services = services

    @app.on_event("startup")
    async def startup_event() -> None:
        check_db_connection()
        init_db()
        purged = purge_resolved_security_events()
        services.sweeper.start()
        logger.info(
            "Backend startup complete",
            extra={
                "event": "startup",
                "purged_events": purged,
                "db_backend": db_backend_name(),
            },
        )

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await services.sweeper.stop()
        services.analysis_worker.shutdown(wait=False)
        logger.info("Backend shutdown complete", extra={"event": "shutdown"})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.middleware("http")(request_guard_middleware)

    api_router = APIRouter(prefix="/api")

    @api_router.get("/")
    async def root() -> dict[str, str]:
        return {"message": "CareSync Guard API"}

    @api_router.get("/health")
    @app.get("/health")
    async def healthcheck() -> dict[str, str]:
        with get_db() as session:
            session.execute(text("SELECT 1"))
        return {"status": "ok", "ts": datetime.now(timezone.utc).isoformat()}

    @app.get("/metrics")
    async def metrics() -> Response:
        if not services.settings.enable_prometheus_metrics:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    api_router.include_router(rate_limits_router)
    api_router.include_router(security_router)
    api_router.include_router(performance_router)
    api_router.include_router(quality_control_router)
    app.include_router(api_router)
    return app


app = create_app()
