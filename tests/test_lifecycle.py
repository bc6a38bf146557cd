import threading
import time
from datetime import timedelta

import pytest

from conftest import NOW, deadline, principal
from taskpilot.services.commands import (
    ApproveCommand,
    AssignCommand,
    CompleteCommand,
    DeleteCommand,
    GenericEditCommand,
    RejectCommand,
)
from taskpilot.services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from taskpilot.services.lifecycle import WorkItemLifecycle
from taskpilot.services.notifications import Notifier, NotifyResult, NullNotifier
from taskpilot.services.users import UserStore
from taskpilot.services.work_items import WorkItemStore


def _assign(lifecycle, admin, worker, **overrides):
    fields = dict(
        worker_id=worker.id,
        task="Write report",
        instructions="Two pages, PDF",
        deadline=deadline(),
        description="Quarterly summary",
    )
    fields.update(overrides)
    return lifecycle.assign(principal(admin), AssignCommand(**fields)).item


def _submit(lifecycle, actor, item, **overrides):
    fields = dict(item_id=item.id, explanation="Done, see link", work_link="https://docs.example.com/r1")
    fields.update(overrides)
    return lifecycle.complete(principal(actor), CompleteCommand(**fields)).item


# -- assign ----------------------------------------------------------------


def test_assign_creates_pending_item_and_runs_side_effects(lifecycle, admin, worker, notifier, calendar):
    result = lifecycle.assign(
        principal(admin),
        AssignCommand(worker_id=worker.id, task="  Write report ", instructions="Two pages", deadline=deadline()),
    )
    item = result.item
    assert item.status == "pending"
    assert item.task == "Write report"
    assert item.description == ""
    assert item.assigned_by == admin.id
    assert item.assigned_at == NOW
    assert item.submitted_at is None and item.reviewed_at is None
    assert item.worker.name == "Wendy Worker"
    assert item.assigned_by_user.email == "alice@example.com"
    assert item.reviewed_by_user is None
    assert result.notification_sent is True
    assert result.calendar_event_created is True
    assert notifier.subjects_for(worker.email) == ["New Task Assigned - TaskPilot"]
    assert calendar.events == [(worker.id, item.id)]


def test_assign_missing_worker_is_not_found_even_for_non_admin(lifecycle, worker):
    with pytest.raises(NotFoundError):
        lifecycle.assign(
            principal(worker),
            AssignCommand(worker_id=9999, task="x", instructions="y", deadline=deadline()),
        )


def test_assign_by_worker_is_forbidden(lifecycle, db, worker, other_worker):
    with pytest.raises(ForbiddenError):
        lifecycle.assign(
            principal(worker),
            AssignCommand(worker_id=other_worker.id, task="x", instructions="y", deadline=deadline()),
        )
    assert WorkItemStore(db).count() == 0


def test_assign_to_inactive_worker_is_not_found(lifecycle, db, admin, worker):
    UserStore(db).update(worker.id, {"is_active": False})
    with pytest.raises(NotFoundError):
        _assign(lifecycle, admin, worker)


@pytest.mark.parametrize(
    "overrides",
    [
        {"task": "   "},
        {"task": "x" * 201},
        {"instructions": ""},
        {"deadline": None},
    ],
)
def test_assign_rejects_invalid_fields_without_writing(lifecycle, db, admin, worker, notifier, overrides):
    with pytest.raises(ValidationError):
        _assign(lifecycle, admin, worker, **overrides)
    assert WorkItemStore(db).count() == 0
    assert notifier.sent == []


def test_assign_accepts_task_at_length_limit(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker, task="x" * 200)
    assert len(item.task) == 200


def test_assign_treats_naive_deadline_as_utc(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker, deadline=deadline().replace(tzinfo=None))
    assert item.deadline == deadline()


# -- complete ---------------------------------------------------------------


def test_complete_submits_and_notifies_every_active_admin(lifecycle, admin, second_admin, worker, notifier, clock):
    item = _assign(lifecycle, admin, worker)
    clock.state["now"] = NOW + timedelta(hours=2)

    result = lifecycle.complete(
        principal(worker),
        CompleteCommand(item_id=item.id, explanation="  Done  ", work_link=" https://example.com/doc "),
    )

    assert result.item.status == "submitted"
    assert result.item.submitted_at == NOW + timedelta(hours=2)
    assert result.item.explanation == "Done"
    assert result.item.work_link == "https://example.com/doc"
    assert result.notification_sent is True
    assert notifier.subjects_for(admin.email) == ["Work Submitted for Review - TaskPilot"]
    assert notifier.subjects_for(second_admin.email) == ["Work Submitted for Review - TaskPilot"]


def test_complete_reports_partial_notification_failure(lifecycle, admin, second_admin, worker, notifier):
    item = _assign(lifecycle, admin, worker)
    notifier.fail_for.add(second_admin.email)
    result = lifecycle.complete(principal(worker), CompleteCommand(item_id=item.id, explanation="Done"))
    assert result.item.status == "submitted"
    assert result.notification_sent is False


def test_complete_blank_link_is_stored_as_none(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    submitted = _submit(lifecycle, worker, item, work_link="   ")
    assert submitted.work_link is None


def test_complete_by_admin_on_behalf_of_worker(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    assert _submit(lifecycle, admin, item).status == "submitted"


def test_complete_by_other_worker_is_forbidden(lifecycle, admin, worker, other_worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ForbiddenError):
        _submit(lifecycle, other_worker, item)


def test_complete_missing_item_is_not_found(lifecycle, worker):
    with pytest.raises(NotFoundError):
        lifecycle.complete(principal(worker), CompleteCommand(item_id=4242, explanation="Done"))


def test_complete_checks_authorization_before_fields(lifecycle, admin, worker, other_worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ForbiddenError):
        lifecycle.complete(principal(other_worker), CompleteCommand(item_id=item.id, explanation=""))


def test_complete_requires_explanation(lifecycle, db, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ValidationError, match="Work description is required"):
        lifecycle.complete(principal(worker), CompleteCommand(item_id=item.id, explanation="   "))
    assert WorkItemStore(db).find_by_id(item.id).status == "pending"


def test_complete_rejects_malformed_link(lifecycle, db, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ValidationError):
        _submit(lifecycle, worker, item, work_link="not a url")
    assert WorkItemStore(db).find_by_id(item.id).status == "pending"


def test_complete_twice_is_a_conflict(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, item)
    with pytest.raises(ConflictError):
        _submit(lifecycle, worker, item)


def test_approved_item_is_terminal(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, item)
    lifecycle.approve(principal(admin), ApproveCommand(item_id=item.id))
    with pytest.raises(ConflictError):
        _submit(lifecycle, worker, item)
    with pytest.raises(ConflictError):
        lifecycle.reject(principal(admin), RejectCommand(item_id=item.id, review_notes="again"))


# -- approve / reject -----------------------------------------------------


def test_approve_records_review_and_notifies_worker(lifecycle, admin, worker, notifier, clock):
    item = _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, item)
    clock.state["now"] = NOW + timedelta(days=1)

    result = lifecycle.approve(principal(admin), ApproveCommand(item_id=item.id, review_notes="  Nice work "))

    approved = result.item
    assert approved.status == "approved"
    assert approved.reviewed_by == admin.id
    assert approved.reviewed_by_user.name == "Alice Admin"
    assert approved.reviewed_at == NOW + timedelta(days=1)
    assert approved.review_notes == "Nice work"
    assert approved.explanation == "Done, see link"
    assert result.notification_sent is True
    assert "Work Approved - TaskPilot" in notifier.subjects_for(worker.email)


def test_approve_blank_notes_become_none(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, item)
    approved = lifecycle.approve(principal(admin), ApproveCommand(item_id=item.id, review_notes="  ")).item
    assert approved.review_notes is None


def test_approve_pending_item_is_a_conflict(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ConflictError):
        lifecycle.approve(principal(admin), ApproveCommand(item_id=item.id))


def test_worker_cannot_approve_even_a_pending_item(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ForbiddenError):
        lifecycle.approve(principal(worker), ApproveCommand(item_id=item.id))


def test_approve_missing_item_is_not_found_for_worker(lifecycle, worker):
    with pytest.raises(NotFoundError):
        lifecycle.approve(principal(worker), ApproveCommand(item_id=1234))


def test_reject_clears_submission_and_allows_resubmission(lifecycle, admin, worker, notifier):
    item = _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, item)

    result = lifecycle.reject(principal(admin), RejectCommand(item_id=item.id, review_notes=" Missing charts "))

    rejected = result.item
    assert rejected.status == "rejected"
    assert rejected.review_notes == "Missing charts"
    assert rejected.submitted_at is None
    assert rejected.explanation is None
    assert rejected.work_link is None
    assert rejected.reviewed_by == admin.id
    assert "Work Requires Revision - TaskPilot" in notifier.subjects_for(worker.email)

    resubmitted = _submit(lifecycle, worker, item, explanation="Added charts")
    assert resubmitted.status == "submitted"
    assert resubmitted.explanation == "Added charts"
    assert resubmitted.review_notes == "Missing charts"


def test_reject_requires_notes(lifecycle, db, admin, worker):
    item = _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, item)
    with pytest.raises(ValidationError, match="Review notes are required"):
        lifecycle.reject(principal(admin), RejectCommand(item_id=item.id, review_notes="   "))
    assert WorkItemStore(db).find_by_id(item.id).status == "submitted"


def test_reject_enforces_configured_minimum_length(db, admin, worker, notifier, calendar, clock):
    strict = WorkItemLifecycle(
        WorkItemStore(db), UserStore(db), notifier, calendar, reject_notes_min_chars=10, clock=clock
    )
    item = _assign(strict, admin, worker)
    _submit(strict, worker, item)
    with pytest.raises(ValidationError):
        strict.reject(principal(admin), RejectCommand(item_id=item.id, review_notes="too short"))
    assert strict.reject(principal(admin), RejectCommand(item_id=item.id, review_notes="needs a chart")).item.status == "rejected"


def test_reject_checks_state_before_notes(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ConflictError):
        lifecycle.reject(principal(admin), RejectCommand(item_id=item.id, review_notes=""))


# -- side effects ------------------------------------------------------------


def test_side_effect_failures_do_not_revert_state(lifecycle, db, admin, worker, notifier, calendar):
    notifier.raise_error = True
    calendar.raise_error = True
    result = lifecycle.assign(
        principal(admin),
        AssignCommand(worker_id=worker.id, task="x", instructions="y", deadline=deadline()),
    )
    assert result.notification_sent is False
    assert result.calendar_event_created is False
    assert WorkItemStore(db).find_by_id(result.item.id).status == "pending"

    submitted = lifecycle.complete(principal(worker), CompleteCommand(item_id=result.item.id, explanation="Done"))
    assert submitted.item.status == "submitted"
    assert submitted.notification_sent is False


def test_null_notifier_reports_nothing_sent(db, admin, worker, calendar, clock):
    quiet = WorkItemLifecycle(WorkItemStore(db), UserStore(db), NullNotifier(), calendar, clock=clock)
    result = quiet.assign(
        principal(admin),
        AssignCommand(worker_id=worker.id, task="x", instructions="y", deadline=deadline()),
    )
    assert result.notification_sent is False
    assert result.item.status == "pending"


class _StalledNotifier(Notifier):
    """Blocks every send until released."""

    def __init__(self):
        self.release = threading.Event()

    def notify(self, recipient_email, subject, body):
        self.release.wait(5)
        return NotifyResult(True)


def test_slow_notifications_cannot_hold_a_transition_past_the_budget(db, admin, second_admin, worker, calendar, clock):
    stalled = _StalledNotifier()
    slow = WorkItemLifecycle(
        WorkItemStore(db), UserStore(db), stalled, calendar, clock=clock, side_effect_budget=0.2
    )
    item = WorkItemStore(db).create(
        dict(worker_id=worker.id, task="x", instructions="y", deadline=deadline(), assigned_by=admin.id, assigned_at=NOW)
    )
    try:
        started = time.monotonic()
        result = slow.complete(principal(worker), CompleteCommand(item_id=item.id, explanation="Done"))
        elapsed = time.monotonic() - started
    finally:
        stalled.release.set()

    assert elapsed < 1.5
    assert result.item.status == "submitted"
    assert result.notification_sent is False


def test_calendar_event_skipped_once_notification_spent_the_budget(db, admin, worker, calendar, clock):
    ticks = {"now": 0.0}

    class Lagging(Notifier):
        def notify(self, recipient_email, subject, body):
            ticks["now"] += 30.0
            return NotifyResult(True)

    lagging = WorkItemLifecycle(
        WorkItemStore(db),
        UserStore(db),
        Lagging(),
        calendar,
        clock=clock,
        side_effect_budget=10.0,
        timer=lambda: ticks["now"],
    )
    result = lagging.assign(
        principal(admin),
        AssignCommand(worker_id=worker.id, task="x", instructions="y", deadline=deadline()),
    )
    assert result.notification_sent is True
    assert result.calendar_event_created is False
    assert calendar.events == []


# -- generic update / delete ---------------------------------------------------


def test_update_changes_descriptive_fields_only(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    updated = lifecycle.update(
        principal(admin),
        GenericEditCommand(item_id=item.id, task="Rewrite report", deadline=deadline(7)),
    ).item
    assert updated.task == "Rewrite report"
    assert updated.deadline == deadline(7)
    assert updated.status == "pending"
    assert updated.instructions == item.instructions


def test_update_rejects_unknown_status(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ValidationError):
        lifecycle.update(principal(admin), GenericEditCommand(item_id=item.id, status="archived"))


def test_update_cannot_fake_a_submission(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ConflictError):
        lifecycle.update(principal(admin), GenericEditCommand(item_id=item.id, status="submitted"))


@pytest.mark.parametrize("status", ["approved", "rejected"])
def test_update_cannot_fake_a_review(lifecycle, db, admin, worker, status):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ConflictError):
        lifecycle.update(principal(admin), GenericEditCommand(item_id=item.id, status=status))
    assert WorkItemStore(db).find_by_id(item.id).status == "pending"


def test_update_cannot_reject_a_submission_without_notes(lifecycle, db, admin, worker):
    item = _submit(lifecycle, worker, _assign(lifecycle, admin, worker))
    with pytest.raises(ConflictError):
        lifecycle.update(principal(admin), GenericEditCommand(item_id=item.id, status="rejected"))

    stored = WorkItemStore(db).find_by_id(item.id)
    assert stored.status == "submitted"
    assert stored.explanation == "Done, see link"
    assert stored.submitted_at is not None
    assert stored.reviewed_at is None


def test_update_can_reopen_an_item(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, item)
    lifecycle.approve(principal(admin), ApproveCommand(item_id=item.id, review_notes="Nice"))
    reopened = lifecycle.update(principal(admin), GenericEditCommand(item_id=item.id, status="pending")).item
    assert reopened.status == "pending"
    assert reopened.submitted_at is None
    assert reopened.explanation is None
    assert reopened.work_link is None
    assert reopened.reviewed_at is None
    assert reopened.reviewed_by is None
    assert reopened.review_notes is None


def test_update_same_status_keeps_review_fields(lifecycle, admin, worker):
    item = _submit(lifecycle, worker, _assign(lifecycle, admin, worker))
    updated = lifecycle.update(
        principal(admin), GenericEditCommand(item_id=item.id, status="submitted", task="Renamed")
    ).item
    assert updated.status == "submitted"
    assert updated.task == "Renamed"
    assert updated.explanation == "Done, see link"


def test_update_without_changes_is_invalid(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ValidationError, match="No valid fields to update"):
        lifecycle.update(principal(admin), GenericEditCommand(item_id=item.id))


def test_update_by_worker_is_forbidden(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ForbiddenError):
        lifecycle.update(principal(worker), GenericEditCommand(item_id=item.id, task="mine now"))


def test_delete_removes_item(lifecycle, db, admin, worker):
    item = _assign(lifecycle, admin, worker)
    assert lifecycle.delete(principal(admin), DeleteCommand(item_id=item.id)).item is None
    assert WorkItemStore(db).find_by_id(item.id) is None
    with pytest.raises(NotFoundError):
        lifecycle.delete(principal(admin), DeleteCommand(item_id=item.id))


def test_delete_by_worker_is_forbidden(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker)
    with pytest.raises(ForbiddenError):
        lifecycle.delete(principal(worker), DeleteCommand(item_id=item.id))


# -- reads -------------------------------------------------------------------


def test_workers_only_see_their_own_items(lifecycle, admin, worker, other_worker):
    mine = _assign(lifecycle, admin, worker)
    _assign(lifecycle, admin, other_worker)

    assert [i.id for i in lifecycle.list_for(principal(worker))] == [mine.id]
    assert len(lifecycle.list_for(principal(admin))) == 2
    with pytest.raises(ForbiddenError):
        lifecycle.get(principal(other_worker), mine.id)
    assert lifecycle.get(principal(worker), mine.id).id == mine.id


def test_list_filters_by_status(lifecycle, admin, worker):
    first = _assign(lifecycle, admin, worker)
    _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, first)

    assert [i.id for i in lifecycle.list_for(principal(worker), status="submitted")] == [first.id]
    assert [i.id for i in lifecycle.list_submitted(principal(admin))] == [first.id]
    with pytest.raises(ValidationError):
        lifecycle.list_for(principal(worker), status="bogus")
    with pytest.raises(ForbiddenError):
        lifecycle.list_submitted(principal(worker))


def test_list_orders_newest_assignment_first(lifecycle, admin, worker, clock):
    older = _assign(lifecycle, admin, worker)
    clock.state["now"] = NOW + timedelta(minutes=5)
    newer = _assign(lifecycle, admin, worker)
    assert [i.id for i in lifecycle.list_for(principal(admin))] == [newer.id, older.id]


def test_stats_count_each_status(lifecycle, admin, worker):
    a = _assign(lifecycle, admin, worker)
    b = _assign(lifecycle, admin, worker)
    _assign(lifecycle, admin, worker)
    _submit(lifecycle, worker, a)
    _submit(lifecycle, worker, b)
    lifecycle.approve(principal(admin), ApproveCommand(item_id=a.id))

    assert lifecycle.stats(principal(admin)) == {
        "total_tasks": 3,
        "pending_tasks": 1,
        "submitted_tasks": 1,
        "approved_tasks": 1,
        "rejected_tasks": 0,
    }
    with pytest.raises(ForbiddenError):
        lifecycle.stats(principal(worker))


def test_overdue_only_while_work_is_outstanding(lifecycle, admin, worker):
    item = _assign(lifecycle, admin, worker, deadline=NOW + timedelta(hours=1))
    later = NOW + timedelta(hours=2)
    assert item.is_overdue(later) is True
    assert item.is_overdue(NOW) is False

    submitted = _submit(lifecycle, worker, item)
    assert submitted.is_overdue(later) is False
