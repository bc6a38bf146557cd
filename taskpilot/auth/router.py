from typing import Optional

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User
from ..schemas.auth import LoginRequest, LoginResponse, RegisterRequest, UserEnvelope, UserOut
from ..services.calendar import GoogleOAuth
from ..services.users import UserStore
from .principal import Principal
from .security import (
    create_access_token,
    create_state_token,
    decode_state_token,
    get_current_user,
    get_password_hash,
    require_admin,
    verify_password,
)


log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    store = UserStore(db)
    user = store.find_by_email(req.email)
    if user is None or not verify_password(req.password, user.password_hash):
        log.info("login_failed", email=req.email.strip().lower())
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")
    user = store.touch_last_login(user.id)
    log.info("login_succeeded", user_id=user.id, role=user.role)
    return LoginResponse(token=create_access_token(user), user=UserOut.model_validate(user))


@router.post("/register", response_model=UserEnvelope, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db), admin: Principal = Depends(require_admin)):
    user = UserStore(db).create(
        name=payload.name,
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        role=payload.role,
    )
    log.info("user_registered", user_id=user.id, role=user.role, registered_by=admin.id)
    return UserEnvelope(user=UserOut.model_validate(user))


@router.get("/verify", response_model=UserEnvelope)
def verify(me: User = Depends(get_current_user)):
    return UserEnvelope(user=UserOut.model_validate(me))


def _oauth(request: Request) -> GoogleOAuth:
    oauth: Optional[GoogleOAuth] = getattr(request.app.state, "google_oauth", None)
    if oauth is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Google Calendar is not configured")
    return oauth


@router.get("/google")
def google_link(request: Request, me: User = Depends(get_current_user)):
    url = _oauth(request).authorization_url(state=create_state_token(me.id))
    return RedirectResponse(url)


@router.get("/google/callback")
def google_callback(code: str, state: str, request: Request, db: Session = Depends(get_db)):
    oauth = _oauth(request)
    user_id = decode_state_token(state)
    store = UserStore(db)
    if store.find_by_id(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    try:
        tokens = oauth.exchange_code(code)
    except httpx.HTTPError as e:
        log.warning("google_oauth_exchange_failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Error authenticating with Google")
    store.link_calendar(user_id, tokens.get("access_token"), tokens.get("refresh_token"))
    log.info("calendar_linked", user_id=user_id)
    return RedirectResponse(f"{settings.frontend_url.rstrip('/')}/worker")


@router.delete("/google", response_model=UserEnvelope)
def google_unlink(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    user = UserStore(db).unlink_calendar(me.id)
    log.info("calendar_unlinked", user_id=me.id)
    return UserEnvelope(user=UserOut.model_validate(user))
