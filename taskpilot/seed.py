from typing import Optional

import structlog
from sqlalchemy.orm import Session

from .auth.security import get_password_hash
from .config import settings
from .models.models import User, UserRole
from .services.users import UserStore


log = structlog.get_logger(__name__)

DEFAULT_ADMIN_NAME = "Admin"


def seed_default_admin(db: Session, reset_password: bool = False) -> Optional[User]:
    """Create the default admin account if it does not exist.

    With ``reset_password`` an existing account gets its password set back to
    the configured default and is reactivated. Returns the admin user.
    """
    store = UserStore(db)
    admin = store.find_by_email(settings.default_admin_email)
    if admin is None:
        admin = store.create(
            name=DEFAULT_ADMIN_NAME,
            email=settings.default_admin_email,
            password_hash=get_password_hash(settings.default_admin_password),
            role=UserRole.ADMIN.value,
        )
        log.info("default_admin_created", user_id=admin.id, email=admin.email)
        return admin
    if reset_password:
        store.set_password_hash(admin.id, get_password_hash(settings.default_admin_password))
        if not admin.is_active:
            store.update(admin.id, {"is_active": True})
        log.info("default_admin_reset", user_id=admin.id)
    return admin
