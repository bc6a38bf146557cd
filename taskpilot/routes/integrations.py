from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..db import engine
from ..services.calendar import NullCalendar
from ..services.notifications import NullNotifier


router = APIRouter(prefix="/integrations", tags=["integrations"])
health_router = APIRouter(prefix="/api", tags=["health"])


def _db_ok() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get("/status")
def status(request: Request):
    return {
        "db": _db_ok(),
        "email": not isinstance(request.app.state.notifier, NullNotifier),
        "calendar": not isinstance(request.app.state.calendar, NullCalendar),
    }


@health_router.get("/health")
def health():
    db_ok = _db_ok()
    return {
        "status": "OK" if db_ok else "DEGRADED",
        "message": f"{settings.app_name} is running",
        "db": db_ok,
    }
