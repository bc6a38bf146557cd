import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import ROLE_VALUES, User, UserRole, WorkItem
from .errors import ConflictError, DependencyError, NotFoundError, ValidationError


log = structlog.get_logger(__name__)

EMAIL_RE = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,})+$")
NAME_MAX_LEN = 100
PASSWORD_MIN_LEN = 6

# Password and role never change through the generic update path
UPDATABLE_FIELDS = {"name", "email", "is_active", "last_login_at"}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if not EMAIL_RE.match(normalized):
        raise ValidationError("Please provide a valid email")
    return normalized


def validate_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    if len(cleaned) > NAME_MAX_LEN:
        raise ValidationError(f"Name cannot be longer than {NAME_MAX_LEN} characters")
    return cleaned


def validate_password(password: str) -> str:
    if not password or len(password) < PASSWORD_MIN_LEN:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LEN} characters long")
    return password


class UserStore:
    def __init__(self, db: Session):
        self.db = db

    def _commit(self, action: str, **context: Any) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            log.warning("user_store_conflict", action=action, error=str(exc.orig), **context)
            raise ConflictError("User already exists") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            log.error("user_store_failed", action=action, error=str(exc), **context)
            raise DependencyError(f"Failed to {action} user") from exc

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.db.execute(
            select(User).where(User.email == normalize_email(email))
        ).scalar_one_or_none()

    def find_all(self, *, role: Optional[str] = None, active: Optional[bool] = None) -> List[User]:
        stmt = select(User)
        if role is not None:
            stmt = stmt.where(User.role == role)
        if active is not None:
            stmt = stmt.where(User.is_active == active)
        stmt = stmt.order_by(User.created_at.desc(), User.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def count(self, *, role: Optional[str] = None) -> int:
        stmt = select(func.count(User.id))
        if role is not None:
            stmt = stmt.where(User.role == role)
        return int(self.db.execute(stmt).scalar_one())

    def create(self, *, name: str, email: str, password_hash: str, role: str = UserRole.WORKER.value) -> User:
        name = validate_name(name)
        email = validate_email(email)
        if role not in ROLE_VALUES:
            raise ValidationError("Role must be either admin or worker")
        if self.find_by_email(email) is not None:
            raise ConflictError("User already exists")
        user = User(name=name, email=email, password_hash=password_hash, role=role)
        self.db.add(user)
        self._commit("create", email=email)
        self.db.refresh(user)
        log.info("user_created", user_id=user.id, role=role)
        return user

    def update(self, user_id: int, fields: Dict[str, Any]) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        changes = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        if not changes:
            raise ValidationError("No valid fields to update")
        if "name" in changes:
            changes["name"] = validate_name(changes["name"])
        if "email" in changes:
            changes["email"] = validate_email(changes["email"])
            existing = self.find_by_email(changes["email"])
            if existing is not None and existing.id != user.id:
                raise ConflictError("Email already taken")
        if "is_active" in changes:
            changes["is_active"] = bool(changes["is_active"])
        for key, value in changes.items():
            setattr(user, key, value)
        self._commit("update", user_id=user_id)
        self.db.refresh(user)
        return user

    def touch_last_login(self, user_id: int) -> User:
        return self.update(user_id, {"last_login_at": datetime.now(timezone.utc)})

    def set_password_hash(self, user_id: int, password_hash: str) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.password_hash = password_hash
        self._commit("reset password for", user_id=user_id)
        return user

    def link_calendar(self, user_id: int, access_token: Optional[str], refresh_token: Optional[str]) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.google_access_token = access_token
        # Google omits the refresh token on re-consent; keep the one we have
        if refresh_token:
            user.google_refresh_token = refresh_token
        self._commit("link calendar for", user_id=user_id)
        return user

    def unlink_calendar(self, user_id: int) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.google_access_token = None
        user.google_refresh_token = None
        self._commit("unlink calendar for", user_id=user_id)
        return user

    def delete(self, user_id: int) -> int:
        """Delete a user and the work items assigned to them.

        Returns the number of work items removed. Admins who still appear as
        the assignor of someone else's work item cannot be deleted.
        """
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        assigned_elsewhere = self.db.execute(
            select(func.count(WorkItem.id)).where(
                WorkItem.assigned_by == user_id, WorkItem.worker_id != user_id
            )
        ).scalar_one()
        if assigned_elsewhere:
            raise ConflictError("User has assigned work items; reassign or delete them first")
        try:
            removed = self.db.execute(delete(WorkItem).where(WorkItem.worker_id == user_id)).rowcount
            self.db.execute(
                update(WorkItem).where(WorkItem.reviewed_by == user_id).values(reviewed_by=None)
            )
            self.db.execute(delete(User).where(User.id == user_id))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            log.error("user_store_failed", action="delete", user_id=user_id, error=str(exc))
            raise DependencyError("Failed to delete user") from exc
        log.info("user_deleted", user_id=user_id, work_items_removed=removed)
        return removed or 0

    def delete_all_workers(self) -> int:
        worker_ids = select(User.id).where(User.role == UserRole.WORKER.value)
        try:
            self.db.execute(delete(WorkItem).where(WorkItem.worker_id.in_(worker_ids)))
            self.db.execute(
                update(WorkItem).where(WorkItem.reviewed_by.in_(worker_ids)).values(reviewed_by=None)
            )
            removed = self.db.execute(delete(User).where(User.role == UserRole.WORKER.value)).rowcount
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise DependencyError("Failed to delete workers") from exc
        return removed or 0
