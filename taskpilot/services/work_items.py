"""
Work item persistence.

Reads join the worker, assigning admin and reviewing admin once and return
``WorkItemView`` projections; callers never touch ORM rows directly.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from ..models.models import STATUS_VALUES, User, WorkItem, WorkStatus
from .errors import DependencyError, NotFoundError


log = structlog.get_logger(__name__)

WRITABLE_FIELDS = {
    "worker_id",
    "task",
    "description",
    "instructions",
    "deadline",
    "status",
    "assigned_by",
    "assigned_at",
    "submitted_at",
    "reviewed_at",
    "explanation",
    "work_link",
    "review_notes",
    "reviewed_by",
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they were stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class UserSummary:
    id: int
    name: Optional[str]
    email: Optional[str]


@dataclass(frozen=True)
class WorkItemView:
    id: int
    worker_id: int
    task: str
    description: str
    instructions: str
    deadline: datetime
    status: str
    assigned_at: datetime
    submitted_at: Optional[datetime]
    reviewed_at: Optional[datetime]
    explanation: Optional[str]
    work_link: Optional[str]
    review_notes: Optional[str]
    assigned_by: int
    reviewed_by: Optional[int]
    worker: UserSummary
    assigned_by_user: UserSummary
    reviewed_by_user: Optional[UserSummary] = None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return as_utc(self.deadline) < as_utc(now) and self.status in (
            WorkStatus.PENDING.value,
            WorkStatus.REJECTED.value,
        )


def _summary(user_id: Optional[int], user: Optional[User]) -> Optional[UserSummary]:
    if user_id is None:
        return None
    return UserSummary(
        id=user_id,
        name=user.name if user else None,
        email=user.email if user else None,
    )


def _to_view(item: WorkItem, worker: Optional[User], assignor: Optional[User], reviewer: Optional[User]) -> WorkItemView:
    return WorkItemView(
        id=item.id,
        worker_id=item.worker_id,
        task=item.task,
        description=item.description or "",
        instructions=item.instructions,
        deadline=as_utc(item.deadline),
        status=item.status,
        assigned_at=as_utc(item.assigned_at),
        submitted_at=as_utc(item.submitted_at),
        reviewed_at=as_utc(item.reviewed_at),
        explanation=item.explanation,
        work_link=item.work_link,
        review_notes=item.review_notes,
        assigned_by=item.assigned_by,
        reviewed_by=item.reviewed_by,
        worker=_summary(item.worker_id, worker),
        assigned_by_user=_summary(item.assigned_by, assignor),
        reviewed_by_user=_summary(item.reviewed_by, reviewer),
    )


class WorkItemStore:
    """Session-backed store; every write commits or rolls back as one unit."""

    def __init__(self, db: Session):
        self.db = db

    def _joined(self):
        worker = aliased(User)
        assignor = aliased(User)
        reviewer = aliased(User)
        stmt = (
            select(WorkItem, worker, assignor, reviewer)
            .outerjoin(worker, WorkItem.worker_id == worker.id)
            .outerjoin(assignor, WorkItem.assigned_by == assignor.id)
            .outerjoin(reviewer, WorkItem.reviewed_by == reviewer.id)
        )
        return stmt

    def _commit(self, action: str, **context: Any) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            log.error("work_item_store_failed", action=action, error=str(exc), **context)
            raise DependencyError(f"Failed to {action} work item") from exc

    def create(self, fields: Dict[str, Any]) -> WorkItemView:
        values = {k: v for k, v in fields.items() if k in WRITABLE_FIELDS}
        values.setdefault("status", WorkStatus.PENDING.value)
        values.setdefault("description", "")
        item = WorkItem(**values)
        self.db.add(item)
        self._commit("create")
        return self.find_by_id(item.id)

    def find_by_id(self, item_id: int) -> Optional[WorkItemView]:
        try:
            row = self.db.execute(self._joined().where(WorkItem.id == item_id)).first()
        except SQLAlchemyError as exc:
            log.error("work_item_store_failed", action="find", item_id=item_id, error=str(exc))
            raise DependencyError("Failed to find work item") from exc
        if row is None:
            return None
        return _to_view(*row)

    def find_all(
        self,
        *,
        worker_id: Optional[int] = None,
        status: Optional[str] = None,
        assigned_by: Optional[int] = None,
    ) -> List[WorkItemView]:
        stmt = self._joined()
        if worker_id is not None:
            stmt = stmt.where(WorkItem.worker_id == worker_id)
        if status is not None:
            stmt = stmt.where(WorkItem.status == status)
        if assigned_by is not None:
            stmt = stmt.where(WorkItem.assigned_by == assigned_by)
        stmt = stmt.order_by(WorkItem.assigned_at.desc(), WorkItem.id.desc())
        try:
            rows = self.db.execute(stmt).all()
        except SQLAlchemyError as exc:
            log.error("work_item_store_failed", action="list", error=str(exc))
            raise DependencyError("Failed to find work items") from exc
        return [_to_view(*row) for row in rows]

    def update(self, item_id: int, fields: Dict[str, Any]) -> WorkItemView:
        item = self.db.get(WorkItem, item_id)
        if item is None:
            raise NotFoundError("Work item not found")
        for key, value in fields.items():
            if key in WRITABLE_FIELDS:
                setattr(item, key, value)
        self._commit("update", item_id=item_id)
        return self.find_by_id(item_id)

    def delete(self, item_id: int) -> None:
        item = self.db.get(WorkItem, item_id)
        if item is None:
            raise NotFoundError("Work item not found")
        self.db.delete(item)
        self._commit("delete", item_id=item_id)

    def count(self, *, worker_id: Optional[int] = None, status: Optional[str] = None) -> int:
        stmt = select(func.count(WorkItem.id))
        if worker_id is not None:
            stmt = stmt.where(WorkItem.worker_id == worker_id)
        if status is not None:
            stmt = stmt.where(WorkItem.status == status)
        try:
            return int(self.db.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise DependencyError("Failed to count work items") from exc

    def count_by_status(self, *, worker_id: Optional[int] = None) -> Dict[str, int]:
        stmt = select(WorkItem.status, func.count(WorkItem.id)).group_by(WorkItem.status)
        if worker_id is not None:
            stmt = stmt.where(WorkItem.worker_id == worker_id)
        try:
            rows = self.db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise DependencyError("Failed to count work items") from exc
        counts = {s: 0 for s in STATUS_VALUES}
        for status, n in rows:
            counts[status] = int(n)
        return counts
