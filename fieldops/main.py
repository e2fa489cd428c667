import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import inspect

from .config import settings
from .db import Base, engine
from .errors import FieldOpsError
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .routes.admin import router as admin_router
from .routes.assignments import router as assignments_router
from .routes.finance import router as finance_router
from .routes.hierarchy import router as hierarchy_router
from .routes.notifications import router as notifications_router
from .routes.tasks import router as tasks_router


logger = structlog.get_logger(__name__)


async def fieldops_error_handler(request: Request, exc: FieldOpsError) -> JSONResponse:
    headers = {"Retry-After": "5"} if exc.retryable else None
    if exc.status_code >= 500:
        logger.warning("request_failed", path=request.url.path, error=exc.kind, detail=exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(FieldOpsError, fieldops_error_handler)

    # Routers
    app.include_router(hierarchy_router)
    app.include_router(tasks_router)
    app.include_router(assignments_router)
    app.include_router(finance_router)
    app.include_router(admin_router)
    app.include_router(notifications_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        if not settings.auto_create_db:
            return
        existing = set(inspect(engine).get_table_names())
        missing = set(Base.metadata.tables.keys()) - existing
        if missing:
            logger.info("creating_tables", count=len(missing))
            Base.metadata.create_all(bind=engine)
        logger.info("startup_complete", tables=len(Base.metadata.tables))

    return app


app = create_app()
