import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.errors import AffiliateError
import app.models  # noqa: F401  # force model registration

from app.api.v1.auth import router as auth_router
from app.api.v1.tracking import router as tracking_router
from app.api.v1.landing import router as landing_router
from app.api.v1.commissions import router as commissions_router
from app.services.notifications import ConversionNotifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    notifier = ConversionNotifier()
    notifier.start()
    app.state.notifier = notifier

    if settings.SCHEDULER_ENABLED:
        from app.jobs.scheduler import shutdown_scheduler, start_scheduler

        start_scheduler()

    try:
        yield
    finally:
        if settings.SCHEDULER_ENABLED:
            shutdown_scheduler()
        await notifier.close()


async def affiliate_error_handler(request: Request, exc: AffiliateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


def create_application() -> FastAPI:
    app = FastAPI(title="Affiliate Core API", lifespan=lifespan)

    # CORS (local dashboard + deployed frontends)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_origin_regex=r"^https:\/\/.*\.app\.github\.dev$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AffiliateError, affiliate_error_handler)

    @app.get("/")
    def root():
        return {"status": "ok", "service": "affiliate-core", "environment": settings.ENVIRONMENT}

    # Routers
    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(tracking_router, prefix="/api/v1")
    app.include_router(landing_router, prefix="/api/v1")
    app.include_router(commissions_router, prefix="/api/v1")

    return app


app = create_application()
