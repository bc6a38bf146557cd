from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..services.work_items import UserSummary, WorkItemView


class AssignRequest(BaseModel):
    worker_id: Optional[int] = None
    task: str = ""
    description: Optional[str] = ""
    instructions: str = ""
    deadline: Optional[datetime] = None


class CompleteRequest(BaseModel):
    explanation: str = ""
    work_link: Optional[str] = None


class ApproveRequest(BaseModel):
    review_notes: Optional[str] = None


class RejectRequest(BaseModel):
    review_notes: str = ""


class WorkItemUpdate(BaseModel):
    task: Optional[str] = None
    description: Optional[str] = None
    instructions: Optional[str] = None
    deadline: Optional[datetime] = None
    status: Optional[str] = None


class UserSummaryOut(BaseModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_summary(cls, summary: Optional[UserSummary]) -> Optional["UserSummaryOut"]:
        if summary is None:
            return None
        return cls(id=summary.id, name=summary.name, email=summary.email)


class WorkItemOut(BaseModel):
    id: int
    worker_id: int
    task: str
    description: str
    instructions: str
    deadline: datetime
    status: str
    assigned_at: datetime
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    explanation: Optional[str] = None
    work_link: Optional[str] = None
    review_notes: Optional[str] = None
    assigned_by: int
    reviewed_by: Optional[int] = None
    worker: Optional[UserSummaryOut] = None
    assigned_by_user: Optional[UserSummaryOut] = None
    reviewed_by_user: Optional[UserSummaryOut] = None
    is_overdue: bool = False

    @classmethod
    def from_view(cls, item: WorkItemView, now: Optional[datetime] = None) -> "WorkItemOut":
        return cls(
            id=item.id,
            worker_id=item.worker_id,
            task=item.task,
            description=item.description,
            instructions=item.instructions,
            deadline=item.deadline,
            status=item.status,
            assigned_at=item.assigned_at,
            submitted_at=item.submitted_at,
            reviewed_at=item.reviewed_at,
            explanation=item.explanation,
            work_link=item.work_link,
            review_notes=item.review_notes,
            assigned_by=item.assigned_by,
            reviewed_by=item.reviewed_by,
            worker=UserSummaryOut.from_summary(item.worker),
            assigned_by_user=UserSummaryOut.from_summary(item.assigned_by_user),
            reviewed_by_user=UserSummaryOut.from_summary(item.reviewed_by_user),
            is_overdue=item.is_overdue(now),
        )


class TransitionResponse(BaseModel):
    message: str
    work_item: Optional[WorkItemOut] = None
    notification_sent: bool = False
    calendar_event_created: bool = False


class WorkStats(BaseModel):
    total_tasks: int
    pending_tasks: int
    submitted_tasks: int
    approved_tasks: int
    rejected_tasks: int
