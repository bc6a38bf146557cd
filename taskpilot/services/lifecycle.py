"""
Work item lifecycle.

    pending --complete--> submitted --approve--> approved
       ^                      |
       |                      +------reject----> rejected --complete--> submitted
       +-- (assign)

Every operation checks, in order: referenced entities exist, the actor may
act, the item is in a state that allows the transition, then the input
fields. Nothing is written until all four pass, and the write is a single
store update. Notifications and calendar events run after the commit and
only report back through ``TransitionResult`` flags.

Side effects of one transition share a single time budget. Each call runs on
a worker thread and the transition stops waiting once the budget is spent;
calls that would start after that are skipped.
"""
import re
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import structlog

from ..auth.principal import Principal
from ..models.models import STATUS_VALUES, WorkStatus
from . import notifications as messages
from .calendar import CalendarCredentials, CalendarPort
from .commands import (
    ApproveCommand,
    AssignCommand,
    CompleteCommand,
    DeleteCommand,
    GenericEditCommand,
    RejectCommand,
)
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .notifications import Notifier
from .users import UserStore
from .work_items import WorkItemStore, WorkItemView


log = structlog.get_logger(__name__)

TASK_MAX_LEN = 200
URL_RE = re.compile(r"^https?://[^\s$.?#].[^\s]*$", re.IGNORECASE)
COMPLETABLE_FROM = (WorkStatus.PENDING.value, WorkStatus.REJECTED.value)
# Statuses generic edit may not set; their fields belong to complete/approve/reject
REVIEW_OWNED_STATUSES = (WorkStatus.SUBMITTED.value, WorkStatus.APPROVED.value, WorkStatus.REJECTED.value)
REOPEN_CLEARS = {
    "submitted_at": None,
    "explanation": None,
    "work_link": None,
    "reviewed_at": None,
    "reviewed_by": None,
    "review_notes": None,
}

_side_effects = ThreadPoolExecutor(max_workers=8, thread_name_prefix="taskpilot-side-effects")


@dataclass(frozen=True)
class TransitionResult:
    item: Optional[WorkItemView]
    notification_sent: bool = False
    calendar_event_created: bool = False


class _Deadline:
    def __init__(self, seconds: float, timer: Callable[[], float]):
        self._timer = timer
        self._end = timer() + seconds

    def remaining(self) -> float:
        return max(0.0, self._end - self._timer())


def _required(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} is required")
    return cleaned


def _task_title(value: Optional[str]) -> str:
    task = _required(value, "Task")
    if len(task) > TASK_MAX_LEN:
        raise ValidationError(f"Task cannot be longer than {TASK_MAX_LEN} characters")
    return task


def _work_link(value: Optional[str]) -> Optional[str]:
    link = (value or "").strip()
    if not link:
        return None
    if not URL_RE.match(link):
        raise ValidationError("Please provide a valid URL")
    return link


def _deadline(value) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError("Deadline is required")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WorkItemLifecycle:
    def __init__(
        self,
        work_items: WorkItemStore,
        users: UserStore,
        notifier: Notifier,
        calendar: CalendarPort,
        *,
        timezone_str: str = "UTC",
        reject_notes_min_chars: int = 1,
        side_effect_budget: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None,
        timer: Callable[[], float] = time.monotonic,
        executor: Optional[Executor] = None,
    ):
        self.work_items = work_items
        self.users = users
        self.notifier = notifier
        self.calendar = calendar
        self.timezone_str = timezone_str
        self.reject_notes_min_chars = max(1, reject_notes_min_chars)
        self.side_effect_budget = side_effect_budget
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._timer = timer
        self._executor = executor or _side_effects

    # -- guards ------------------------------------------------------------

    def _load(self, item_id: int) -> WorkItemView:
        item = self.work_items.find_by_id(item_id)
        if item is None:
            raise NotFoundError("Work item not found")
        return item

    @staticmethod
    def _require_admin(actor: Principal) -> None:
        if not actor.is_admin:
            raise ForbiddenError("Admin access required")

    @staticmethod
    def _require_status(item: WorkItemView, allowed, action: str) -> None:
        if item.status not in allowed:
            raise ConflictError(f"Cannot {action} work item in status '{item.status}'")

    # -- side effects ------------------------------------------------------

    def _budget(self) -> _Deadline:
        return _Deadline(self.side_effect_budget, self._timer)

    def _run(self, effect: str, deadline: _Deadline, call: Callable[[], Any], **context: Any) -> Any:
        """Run ``call`` off-thread within what is left of ``deadline``; None on any failure."""
        remaining = deadline.remaining()
        if remaining <= 0:
            log.warning("side_effect_skipped", effect=effect, reason="budget exhausted", **context)
            return None
        future = self._executor.submit(call)
        try:
            return future.result(timeout=remaining)
        except FutureTimeout:
            # the call keeps running in the background; its outcome is no longer reported
            log.warning("side_effect_timed_out", effect=effect, budget=self.side_effect_budget, **context)
            return None
        except Exception as e:
            log.warning(f"{effect}_failed", error=str(e), **context)
            return None

    def _notify(self, deadline: _Deadline, email: Optional[str], subject: str, body: str) -> bool:
        if not email:
            return False
        result = self._run(
            "notification",
            deadline,
            lambda: self.notifier.notify(email, subject, body),
            recipient=email,
            subject=subject,
        )
        return bool(result and result.success)

    def _notify_user(self, deadline: _Deadline, user_id: int, build: Callable[[str], tuple]) -> bool:
        user = self.users.find_by_id(user_id)
        if user is None:
            return False
        subject, body = build(user.name)
        return self._notify(deadline, user.email, subject, body)

    def _create_event(self, deadline: _Deadline, credentials: CalendarCredentials, item: WorkItemView) -> bool:
        result = self._run(
            "calendar_event",
            deadline,
            lambda: self.calendar.create_event(credentials, item),
            work_item_id=item.id,
        )
        return bool(result)

    def _display_name(self, user_id: int) -> str:
        user = self.users.find_by_id(user_id)
        return user.name if user else "An administrator"

    # -- transitions -------------------------------------------------------

    def assign(self, actor: Principal, cmd: AssignCommand) -> TransitionResult:
        worker = self.users.find_by_id(cmd.worker_id)
        if worker is None or not worker.is_active:
            raise NotFoundError("Worker not found")
        self._require_admin(actor)
        fields = {
            "worker_id": worker.id,
            "task": _task_title(cmd.task),
            "description": (cmd.description or "").strip(),
            "instructions": _required(cmd.instructions, "Instructions"),
            "deadline": _deadline(cmd.deadline),
            "status": WorkStatus.PENDING.value,
            "assigned_by": actor.id,
            "assigned_at": self._clock(),
        }
        item = self.work_items.create(fields)
        log.info("work_item_assigned", work_item_id=item.id, worker_id=worker.id, assigned_by=actor.id)

        deadline = self._budget()
        subject, body = messages.assigned_message(worker.name, item, self.timezone_str)
        sent = self._notify(deadline, worker.email, subject, body)
        created = self._create_event(deadline, CalendarCredentials.from_user(worker), item)
        return TransitionResult(item, notification_sent=sent, calendar_event_created=created)

    def complete(self, actor: Principal, cmd: CompleteCommand) -> TransitionResult:
        item = self._load(cmd.item_id)
        if not actor.is_admin and item.worker_id != actor.id:
            raise ForbiddenError("Unauthorized - not your task")
        self._require_status(item, COMPLETABLE_FROM, "complete")
        explanation = _required(cmd.explanation, "Work description")
        work_link = _work_link(cmd.work_link)

        updated = self.work_items.update(
            item.id,
            {
                "status": WorkStatus.SUBMITTED.value,
                "submitted_at": self._clock(),
                "explanation": explanation,
                "work_link": work_link,
            },
        )
        log.info("work_item_submitted", work_item_id=item.id, actor_id=actor.id, resubmission=item.status == WorkStatus.REJECTED.value)

        submitter = self._display_name(actor.id)
        batch = []
        for admin in self.users.find_all(role="admin", active=True):
            subject, body = messages.submitted_message(admin.name, submitter, updated, self.timezone_str)
            batch.append((admin.email, subject, body))
        if not batch:
            return TransitionResult(updated)
        results = self._run(
            "notification",
            self._budget(),
            lambda: self.notifier.notify_many(batch),
            recipients=len(batch),
        )
        sent = bool(results) and len(results) == len(batch) and all(r.success for r in results)
        return TransitionResult(updated, notification_sent=sent)

    def approve(self, actor: Principal, cmd: ApproveCommand) -> TransitionResult:
        item = self._load(cmd.item_id)
        self._require_admin(actor)
        self._require_status(item, (WorkStatus.SUBMITTED.value,), "approve")
        notes = (cmd.review_notes or "").strip() or None

        updated = self.work_items.update(
            item.id,
            {
                "status": WorkStatus.APPROVED.value,
                "reviewed_at": self._clock(),
                "reviewed_by": actor.id,
                "review_notes": notes,
            },
        )
        log.info("work_item_approved", work_item_id=item.id, reviewed_by=actor.id)

        reviewer = self._display_name(actor.id)
        sent = self._notify_user(
            self._budget(),
            updated.worker_id,
            lambda name: messages.approved_message(name, reviewer, updated, self.timezone_str),
        )
        return TransitionResult(updated, notification_sent=sent)

    def reject(self, actor: Principal, cmd: RejectCommand) -> TransitionResult:
        item = self._load(cmd.item_id)
        self._require_admin(actor)
        self._require_status(item, (WorkStatus.SUBMITTED.value,), "reject")
        notes = (cmd.review_notes or "").strip()
        if not notes:
            raise ValidationError("Review notes are required when rejecting work")
        if len(notes) < self.reject_notes_min_chars:
            raise ValidationError(
                f"Review notes must be at least {self.reject_notes_min_chars} characters"
            )

        updated = self.work_items.update(
            item.id,
            {
                "status": WorkStatus.REJECTED.value,
                "reviewed_at": self._clock(),
                "reviewed_by": actor.id,
                "review_notes": notes,
                "submitted_at": None,
                "explanation": None,
                "work_link": None,
            },
        )
        log.info("work_item_rejected", work_item_id=item.id, reviewed_by=actor.id)

        reviewer = self._display_name(actor.id)
        sent = self._notify_user(
            self._budget(),
            updated.worker_id,
            lambda name: messages.rejected_message(name, reviewer, updated, self.timezone_str),
        )
        return TransitionResult(updated, notification_sent=sent)

    def update(self, actor: Principal, cmd: GenericEditCommand) -> TransitionResult:
        item = self._load(cmd.item_id)
        self._require_admin(actor)
        changes = cmd.changes()
        if not changes:
            raise ValidationError("No valid fields to update")
        status = changes.get("status")
        if status is not None and status != item.status:
            if status not in STATUS_VALUES:
                raise ValidationError("Status must be pending, submitted, approved, or rejected")
            if status in REVIEW_OWNED_STATUSES:
                raise ConflictError(f"Cannot set status '{status}' directly; use complete, approve or reject")
            # reopening starts the item over
            changes.update(REOPEN_CLEARS)
        elif status is not None:
            del changes["status"]
        if "task" in changes:
            changes["task"] = _task_title(changes["task"])
        if "instructions" in changes:
            changes["instructions"] = _required(changes["instructions"], "Instructions")
        if "description" in changes:
            changes["description"] = changes["description"].strip()
        if "deadline" in changes:
            changes["deadline"] = _deadline(changes["deadline"])
        if not changes:
            return TransitionResult(item)

        updated = self.work_items.update(item.id, changes)
        log.info("work_item_updated", work_item_id=item.id, actor_id=actor.id, fields=sorted(changes))
        return TransitionResult(updated)

    def delete(self, actor: Principal, cmd: DeleteCommand) -> TransitionResult:
        item = self._load(cmd.item_id)
        self._require_admin(actor)
        self.work_items.delete(item.id)
        log.info("work_item_deleted", work_item_id=item.id, actor_id=actor.id)
        return TransitionResult(None)

    # -- reads -------------------------------------------------------------

    def get(self, actor: Principal, item_id: int) -> WorkItemView:
        item = self._load(item_id)
        if not actor.is_admin and item.worker_id != actor.id:
            raise ForbiddenError("Unauthorized - not your task")
        return item

    def list_for(self, actor: Principal, status: Optional[str] = None) -> List[WorkItemView]:
        if status is not None and status not in STATUS_VALUES:
            raise ValidationError("Status must be pending, submitted, approved, or rejected")
        if actor.is_admin:
            return self.work_items.find_all(status=status)
        return self.work_items.find_all(worker_id=actor.id, status=status)

    def list_submitted(self, actor: Principal) -> List[WorkItemView]:
        self._require_admin(actor)
        return self.work_items.find_all(status=WorkStatus.SUBMITTED.value)

    def stats(self, actor: Principal) -> dict:
        self._require_admin(actor)
        counts = self.work_items.count_by_status()
        return {
            "total_tasks": sum(counts.values()),
            "pending_tasks": counts[WorkStatus.PENDING.value],
            "submitted_tasks": counts[WorkStatus.SUBMITTED.value],
            "approved_tasks": counts[WorkStatus.APPROVED.value],
            "rejected_tasks": counts[WorkStatus.REJECTED.value],
        }
