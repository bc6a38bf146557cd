import os

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .db import Base, SessionLocal, engine
from .logging import RequestIdMiddleware, setup_logging
from .auth.router import router as auth_router
from .routes.integrations import health_router, router as integrations_router
from .routes.users import router as users_router
from .routes.work import router as work_router
from .seed import seed_default_admin
from .services.calendar import build_calendar, build_oauth
from .services.errors import TaskPilotError, ValidationError
from .services.notifications import build_notifier


log = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit],
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Side-effect ports are chosen once; handlers never re-check configuration
    app.state.notifier = build_notifier(settings)
    app.state.calendar = build_calendar(settings)
    app.state.google_oauth = build_oauth(settings)

    @app.exception_handler(TaskPilotError)
    async def _taskpilot_error(request: Request, exc: TaskPilotError):
        if exc.status_code >= 500:
            log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request")
        detail = f"{field}: {message}" if field else message
        return JSONResponse(status_code=400, content={"detail": detail, "code": ValidationError.code})

    # Routers
    app.include_router(auth_router)
    app.include_router(work_router)
    app.include_router(users_router)
    app.include_router(integrations_router)
    app.include_router(health_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        log.info("startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if not settings.auto_create_db:
            return
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError as e:
            log.error("create_tables_failed", error=str(e))
            raise
        db = SessionLocal()
        try:
            seed_default_admin(db)
        except TaskPilotError as e:
            log.warning("seed_admin_failed", error=e.message)
        finally:
            db.close()

    return app


app = create_app()
