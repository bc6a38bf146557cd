from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from ..auth.principal import Principal
from ..auth.security import get_principal, require_admin
from ..config import settings
from ..db import get_db
from ..schemas.work import (
    ApproveRequest,
    AssignRequest,
    CompleteRequest,
    RejectRequest,
    TransitionResponse,
    WorkItemOut,
    WorkItemUpdate,
    WorkStats,
)
from ..services.commands import (
    ApproveCommand,
    AssignCommand,
    CompleteCommand,
    DeleteCommand,
    GenericEditCommand,
    RejectCommand,
)
from ..services.errors import ValidationError
from ..services.lifecycle import TransitionResult, WorkItemLifecycle
from ..services.users import UserStore
from ..services.work_items import WorkItemStore


router = APIRouter(prefix="/api/work", tags=["work"])


def get_lifecycle(request: Request, db: Session = Depends(get_db)) -> WorkItemLifecycle:
    return WorkItemLifecycle(
        WorkItemStore(db),
        UserStore(db),
        request.app.state.notifier,
        request.app.state.calendar,
        timezone_str=settings.tz_default,
        reject_notes_min_chars=settings.reject_notes_min_chars,
        side_effect_budget=settings.side_effect_timeout_seconds,
    )


def _respond(message: str, result: TransitionResult) -> TransitionResponse:
    now = datetime.now(timezone.utc)
    return TransitionResponse(
        message=message,
        work_item=WorkItemOut.from_view(result.item, now) if result.item else None,
        notification_sent=result.notification_sent,
        calendar_event_created=result.calendar_event_created,
    )


@router.post("/assign", response_model=TransitionResponse, status_code=status.HTTP_201_CREATED)
def assign_work(
    payload: AssignRequest,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    if payload.worker_id is None:
        raise ValidationError("WorkerId, task, instructions, and deadline are required")
    result = lifecycle.assign(
        me,
        AssignCommand(
            worker_id=payload.worker_id,
            task=payload.task,
            description=payload.description or "",
            instructions=payload.instructions,
            deadline=payload.deadline,
        ),
    )
    return _respond("Task assigned successfully", result)


@router.get("", response_model=List[WorkItemOut])
@router.get("/", response_model=List[WorkItemOut], include_in_schema=False)
def list_work(
    status: Optional[str] = None,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    now = datetime.now(timezone.utc)
    return [WorkItemOut.from_view(item, now) for item in lifecycle.list_for(me, status=status)]


@router.get("/submitted", response_model=List[WorkItemOut])
def list_submitted(
    me: Principal = Depends(require_admin),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    now = datetime.now(timezone.utc)
    return [WorkItemOut.from_view(item, now) for item in lifecycle.list_submitted(me)]


@router.get("/stats", response_model=WorkStats)
def work_stats(
    me: Principal = Depends(require_admin),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    return lifecycle.stats(me)


@router.get("/{item_id}", response_model=WorkItemOut)
def get_work_item(
    item_id: int,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    return WorkItemOut.from_view(lifecycle.get(me, item_id), datetime.now(timezone.utc))


@router.put("/complete/{item_id}", response_model=TransitionResponse)
def complete_work(
    item_id: int,
    payload: CompleteRequest,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.complete(
        me, CompleteCommand(item_id=item_id, explanation=payload.explanation, work_link=payload.work_link)
    )
    return _respond("Work submitted for review successfully", result)


@router.put("/approve/{item_id}", response_model=TransitionResponse)
def approve_work(
    item_id: int,
    payload: ApproveRequest,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.approve(me, ApproveCommand(item_id=item_id, review_notes=payload.review_notes))
    return _respond("Work approved successfully", result)


@router.put("/reject/{item_id}", response_model=TransitionResponse)
def reject_work(
    item_id: int,
    payload: RejectRequest,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.reject(me, RejectCommand(item_id=item_id, review_notes=payload.review_notes))
    return _respond("Work rejected successfully", result)


@router.put("/update/{item_id}", response_model=TransitionResponse)
def update_work(
    item_id: int,
    payload: WorkItemUpdate,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.update(
        me,
        GenericEditCommand(
            item_id=item_id,
            task=payload.task,
            description=payload.description,
            instructions=payload.instructions,
            deadline=payload.deadline,
            status=payload.status,
        ),
    )
    return _respond("Work item updated successfully", result)


@router.delete("/{item_id}", response_model=TransitionResponse)
def delete_work(
    item_id: int,
    me: Principal = Depends(get_principal),
    lifecycle: WorkItemLifecycle = Depends(get_lifecycle),
):
    lifecycle.delete(me, DeleteCommand(item_id=item_id))
    return TransitionResponse(message="Work item deleted successfully")
