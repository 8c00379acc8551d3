import threading
from datetime import timedelta
from pathlib import Path

import pytest

from projecthub.core.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from projecthub.models.enums import AssignmentType, NotificationType, SubmissionStatus, TaskStatus
from projecthub.models.submission import Submission
from projecthub.models.task import Task
from projecthub.schemas.submission import SubmissionFileInput, SubmissionInput
from projecthub.schemas.task import TaskCreate, TaskUpdate
from projecthub.services.lifecycle import TaskLifecycleManager, as_utc, can_resubmit


@pytest.fixture()
def manager(db, sink, storage, clock):
    return TaskLifecycleManager(db, sink=sink, storage=storage, clock=clock)


@pytest.fixture()
def make_task(manager, users, server, team, clock):
    def _make(**overrides):
        fields = dict(
            server_id=server.id,
            title="Sprint 1 report",
            description="Write up the first sprint",
            due_date=clock.now + timedelta(hours=1),
            team_ids=[team.id],
        )
        fields.update(overrides)
        return manager.create_task(TaskCreate(**fields), users["faculty1"])

    return _make


def pdf(name="report.pdf", size=None, data=b"%PDF-1.4"):
    return SubmissionFileInput(
        filename=name,
        content_type="application/pdf",
        size=len(data) if size is None else size,
        data=data,
    )


def stored_files(storage) -> set:
    root = Path(storage.root)
    return set(p.name for p in root.iterdir()) if root.exists() else set()


# --- creation -----------------------------------------------------------------


def test_due_date_must_be_strictly_in_the_future(make_task, clock):
    with pytest.raises(ValidationError):
        make_task(due_date=clock.now)
    with pytest.raises(ValidationError):
        make_task(due_date=clock.now - timedelta(minutes=1))

    task = make_task(due_date=clock.now + timedelta(seconds=1))
    assert task.status == TaskStatus.ACTIVE


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_points": 0},
        {"max_attempts": 0},
        {"max_attempts": 11},
        {"max_file_size": 0},
    ],
)
def test_out_of_range_settings_are_rejected(make_task, db, overrides):
    with pytest.raises(ValidationError):
        make_task(**overrides)
    assert db.query(Task).count() == 0


def test_team_task_needs_at_least_one_team(make_task, team):
    with pytest.raises(ValidationError):
        make_task(team_ids=[])

    task = make_task(team_ids=[], assign_to_all=True)
    assert task.team_ids == [team.id]


def test_team_from_another_server_is_rejected(make_task, team):
    with pytest.raises(ValidationError):
        make_task(team_ids=[team.id, team.id + 1000])


def test_only_owning_faculty_can_create(manager, users, server, team, clock):
    payload = TaskCreate(
        server_id=server.id,
        title="HW",
        description="d",
        due_date=clock.now + timedelta(days=1),
        team_ids=[team.id],
    )
    with pytest.raises(AuthorizationError):
        manager.create_task(payload, users["student1"])
    with pytest.raises(AuthorizationError):
        manager.create_task(payload, users["faculty2"])

    missing = payload.model_copy(update={"server_id": server.id + 1000})
    with pytest.raises(NotFoundError):
        manager.create_task(missing, users["faculty1"])


def test_publish_immediately_notifies_every_team_member(make_task, sink, users):
    task = make_task()

    assert task.status == TaskStatus.ACTIVE
    assert task.published_at is not None
    assert {e.recipient_id for e in sink.events} == {users["student1"].id, users["student2"].id}
    assert all(e.type == NotificationType.TASK_ASSIGNED and e.task_id == task.id for e in sink.events)


def test_draft_is_silent_until_published(make_task, manager, sink, users):
    task = make_task(publish_immediately=False)
    assert task.status == TaskStatus.DRAFT
    assert sink.events == []

    manager.publish_task(task.id, users["faculty1"])
    assert task.status == TaskStatus.ACTIVE
    assert len(sink.events) == 2

    with pytest.raises(StateError):
        manager.publish_task(task.id, users["faculty1"])


def test_notify_students_flag_suppresses_assignment_notifications(make_task, sink):
    make_task(notify_students=False)
    assert sink.events == []


def test_allowed_file_types_are_normalised(make_task):
    task = make_task(allow_file_upload=True, allowed_file_types=[".PDF", "exe", "zip", "pdf"])
    assert task.allowed_file_types == ["pdf", "zip"]

    with pytest.raises(ValidationError):
        make_task(allow_file_upload=True, allowed_file_types=["exe"])


def test_individual_task_defaults_to_every_server_member(make_task, manager, users):
    task = make_task(assignment_type=AssignmentType.INDIVIDUAL, team_ids=[])
    assert manager.assigned_student_ids(task) == {
        users["student1"].id,
        users["student2"].id,
        users["student3"].id,
    }

    sub = manager.submit(task.id, users["student3"].id, SubmissionInput(comment="solo work"))
    assert sub.team_id is None


# --- submission ------------------------------------------------------------------


def test_single_attempt_scenario(make_task, manager, users, clock):
    task = make_task(max_attempts=1, allow_late_submissions=False, due_date=clock.now + timedelta(hours=1))

    clock.advance(timedelta(minutes=2))
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput(comment="first try"))

    assert sub.attempt_number == 1
    assert sub.is_late is False
    assert sub.status == SubmissionStatus.SUBMITTED
    assert as_utc(sub.submitted_at) == clock.now

    with pytest.raises(StateError):
        manager.submit(task.id, users["student1"].id, SubmissionInput(comment="second try"))


def test_attempt_numbers_never_exceed_max_attempts(make_task, manager, users, db):
    task = make_task(max_attempts=3)
    student = users["student1"].id

    numbers = [manager.submit(task.id, student, SubmissionInput()).attempt_number for _ in range(3)]
    assert numbers == [1, 2, 3]

    with pytest.raises(StateError):
        manager.submit(task.id, student, SubmissionInput())
    assert db.query(Submission).filter(Submission.task_id == task.id).count() == 3


def test_attempts_are_counted_per_student(make_task, manager, users):
    task = make_task(max_attempts=1)
    manager.submit(task.id, users["student1"].id, SubmissionInput())

    sub = manager.submit(task.id, users["student2"].id, SubmissionInput())
    assert sub.attempt_number == 1


def test_past_due_with_late_submissions_allowed_is_marked_late(make_task, manager, users, clock):
    task = make_task(allow_late_submissions=True, due_date=clock.now + timedelta(hours=1))
    clock.advance(timedelta(hours=2))  # due date now an hour in the past

    sub = manager.submit(task.id, users["student1"].id, SubmissionInput(comment="sorry, late"))
    assert sub.is_late is True


def test_past_due_without_late_submissions_is_rejected(make_task, manager, users, clock, db):
    task = make_task(allow_late_submissions=False)
    clock.advance(timedelta(hours=2))

    with pytest.raises(StateError):
        manager.submit(task.id, users["student1"].id, SubmissionInput())
    assert db.query(Submission).count() == 0


def test_submit_requires_active_task(make_task, manager, users):
    draft = make_task(publish_immediately=False)
    with pytest.raises(StateError):
        manager.submit(draft.id, users["student1"].id, SubmissionInput())

    archived = make_task()
    manager.archive_task(archived.id, users["faculty1"])
    with pytest.raises(StateError):
        manager.submit(archived.id, users["student1"].id, SubmissionInput())


def test_submit_permissions_and_lookup(make_task, manager, users):
    task = make_task()

    with pytest.raises(AuthorizationError):
        manager.submit(task.id, users["student3"].id, SubmissionInput())  # no team
    with pytest.raises(AuthorizationError):
        manager.submit(task.id, users["faculty1"].id, SubmissionInput())
    with pytest.raises(NotFoundError):
        manager.submit(task.id + 1000, users["student1"].id, SubmissionInput())


def test_team_submission_records_team(make_task, manager, users, team):
    task = make_task()
    sub = manager.submit(task.id, users["student2"].id, SubmissionInput())
    assert sub.team_id == team.id


def test_required_comment_policy(make_task, manager, users):
    task = make_task(require_comment=True)

    with pytest.raises(ValidationError):
        manager.submit(task.id, users["student1"].id, SubmissionInput(comment="   "))

    sub = manager.submit(task.id, users["student1"].id, SubmissionInput(comment="Here it is"))
    assert sub.comment == "Here it is"


def test_collaborators_are_normalised(make_task, manager, users):
    task = make_task()
    sub = manager.submit(
        task.id,
        users["student1"].id,
        SubmissionInput(collaborators=["Student2@Example.com", "student2@example.com"]),
    )
    assert sub.collaborators == ["student2@example.com"]


def test_files_rejected_when_uploads_disabled(make_task, manager, users, storage):
    task = make_task(allow_file_upload=False)
    before = stored_files(storage)

    with pytest.raises(ValidationError):
        manager.submit(task.id, users["student1"].id, SubmissionInput(files=[pdf()]))
    assert stored_files(storage) == before


def test_one_bad_file_rejects_the_whole_attempt(make_task, manager, users, storage, db):
    task = make_task(allow_file_upload=True, allowed_file_types=["pdf"])
    before = stored_files(storage)

    with pytest.raises(ValidationError):
        manager.submit(
            task.id,
            users["student1"].id,
            SubmissionInput(files=[pdf("a.pdf"), pdf("b.exe")]),
        )

    assert stored_files(storage) == before
    assert db.query(Submission).count() == 0
    # the failed attempt does not use up the slot
    assert manager.submit(task.id, users["student1"].id, SubmissionInput()).attempt_number == 1


def test_file_size_limit(make_task, manager, users):
    task = make_task(allow_file_upload=True, max_file_size=1024)

    with pytest.raises(ValidationError):
        manager.submit(task.id, users["student1"].id, SubmissionInput(files=[pdf(size=2048)]))


def test_files_are_stored_in_order(make_task, manager, users, storage):
    task = make_task(allow_file_upload=True)  # empty allowed_file_types = any type

    sub = manager.submit(
        task.id,
        users["student1"].id,
        SubmissionInput(files=[pdf("Final Report.pdf"), pdf("notes.txt", data=b"notes")]),
    )

    assert [f.original_name for f in sub.files] == ["Final Report.pdf", "notes.txt"]
    assert [f.position for f in sub.files] == [0, 1]
    assert (Path(storage.root) / sub.files[1].storage_ref).read_bytes() == b"notes"


def test_submit_notifies_faculty(make_task, manager, users, sink):
    task = make_task(notify_students=False)
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())

    (event,) = sink.events
    assert event.type == NotificationType.TASK_SUBMITTED
    assert event.recipient_id == users["faculty1"].id
    assert event.submission_id == sub.id


def test_failing_sink_does_not_roll_back_submission(make_task, users, db, storage, clock, session_factory):
    class BrokenSink:
        def publish(self, event):
            raise ConnectionError("realtime channel down")

    manager = TaskLifecycleManager(db, sink=BrokenSink(), storage=storage, clock=clock)
    task = make_task()

    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())

    check = session_factory()
    try:
        assert check.get(Submission, sub.id) is not None
    finally:
        check.close()


# --- can_resubmit ---------------------------------------------------------------


def test_can_resubmit_is_false_at_max_attempts_regardless_of_due_date(make_task, manager, users, clock):
    task = make_task(max_attempts=1, due_date=clock.now + timedelta(days=7), allow_late_submissions=True)
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())

    assert can_resubmit(sub, task, clock.now) is False
    assert manager.can_resubmit(sub) is False


def test_can_resubmit_follows_the_clock(make_task, manager, users, clock):
    task = make_task(max_attempts=2, allow_late_submissions=False)
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())
    assert manager.can_resubmit(sub) is True

    clock.advance(timedelta(hours=2))
    assert manager.can_resubmit(sub) is False

    task.allow_late_submissions = True
    assert manager.can_resubmit(sub) is True


# --- grading --------------------------------------------------------------------


@pytest.mark.parametrize("bad_grade", [-1, 101])
def test_out_of_range_grade_leaves_submission_unchanged(make_task, manager, users, db, bad_grade):
    task = make_task(max_points=100)
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())

    with pytest.raises(ValidationError):
        manager.grade(sub.id, bad_grade, "nope", users["faculty1"])

    db.refresh(sub)
    assert sub.status == SubmissionStatus.SUBMITTED
    assert sub.grade is None
    assert sub.feedback is None
    assert sub.graded_at is None


def test_grade_round_trip(make_task, manager, users, clock, sink, session_factory):
    task = make_task(max_points=100, notify_students=False)
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())
    clock.advance(timedelta(minutes=30))

    manager.grade(sub.id, 100, "Great work", users["faculty1"])

    fresh = session_factory()
    try:
        stored = fresh.get(Submission, sub.id)
        assert stored.status == SubmissionStatus.GRADED
        assert stored.grade == 100
        assert stored.feedback == "Great work"
        assert as_utc(stored.graded_at) == clock.now
        assert stored.graded_by_id == users["faculty1"].id
    finally:
        fresh.close()

    graded = [e for e in sink.events if e.type == NotificationType.TASK_GRADED]
    assert [e.recipient_id for e in graded] == [users["student1"].id]
    assert "100/100" in graded[0].message


def test_regrading_keeps_last_grade(make_task, manager, users, clock):
    task = make_task()
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())

    manager.grade(sub.id, 70, "ok", users["faculty1"])
    clock.advance(timedelta(minutes=5))
    manager.grade(sub.id, 85, "better after review", users["admin"])

    assert sub.grade == 85
    assert sub.feedback == "better after review"
    assert as_utc(sub.graded_at) == clock.now


def test_only_owner_or_admin_can_grade(make_task, manager, users):
    task = make_task()
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())

    with pytest.raises(AuthorizationError):
        manager.grade(sub.id, 50, None, users["faculty2"])
    with pytest.raises(AuthorizationError):
        manager.grade(sub.id, 50, None, users["student2"])
    with pytest.raises(NotFoundError):
        manager.grade(sub.id + 1000, 50, None, users["faculty1"])

    assert manager.grade(sub.id, 50, None, users["admin"]).grade == 50


def test_review_grade_return_flow(make_task, manager, users, sink):
    task = make_task(max_attempts=2, notify_students=False)
    faculty = users["faculty1"]
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())

    with pytest.raises(StateError):
        manager.return_submission(sub.id, faculty)

    manager.mark_under_review(sub.id, faculty)
    assert sub.status == SubmissionStatus.UNDER_REVIEW
    with pytest.raises(StateError):
        manager.mark_under_review(sub.id, faculty)

    manager.grade(sub.id, 60, "revise section 2", faculty)
    manager.return_submission(sub.id, faculty)
    assert sub.status == SubmissionStatus.RETURNED
    with pytest.raises(StateError):
        manager.grade(sub.id, 70, None, faculty)

    # a returned attempt is followed by a fresh one
    second = manager.submit(task.id, users["student1"].id, SubmissionInput(comment="revised"))
    assert second.attempt_number == 2
    assert second.status == SubmissionStatus.SUBMITTED
    assert sink.events[-1].type == NotificationType.TASK_SUBMITTED


def test_grade_latest_picks_newest_attempt(make_task, manager, users):
    task = make_task(max_attempts=2)
    manager.submit(task.id, users["student1"].id, SubmissionInput())
    second = manager.submit(task.id, users["student1"].id, SubmissionInput())

    graded = manager.grade_latest(task.id, users["student1"].id, 40, None, users["faculty1"])
    assert graded.id == second.id

    with pytest.raises(NotFoundError):
        manager.grade_latest(task.id, users["student2"].id, 40, None, users["faculty1"])


# --- archive / update / delete ------------------------------------------------


def test_archiving_twice_fails_and_task_stays_archived(make_task, manager, users):
    task = make_task()
    manager.archive_task(task.id, users["faculty1"])

    with pytest.raises(StateError):
        manager.archive_task(task.id, users["faculty1"])
    assert task.status == TaskStatus.ARCHIVED
    assert task.archived_at is not None


def test_only_active_tasks_can_be_archived(make_task, manager, users):
    draft = make_task(publish_immediately=False)
    with pytest.raises(StateError):
        manager.archive_task(draft.id, users["faculty1"])
    with pytest.raises(AuthorizationError):
        manager.archive_task(draft.id, users["faculty2"])


def test_update_task_validates_and_applies(make_task, manager, users, clock):
    task = make_task()

    with pytest.raises(ValidationError):
        manager.update_task(task.id, TaskUpdate(due_date=clock.now - timedelta(hours=1)), users["faculty1"])
    with pytest.raises(ValidationError):
        manager.update_task(task.id, TaskUpdate(max_points=0), users["faculty1"])

    updated = manager.update_task(
        task.id,
        TaskUpdate(max_points=50, allow_file_upload=True, allowed_file_types=["DOCX"]),
        users["faculty1"],
    )
    assert updated.max_points == 50
    assert updated.allowed_file_types == ["docx"]

    manager.archive_task(task.id, users["faculty1"])
    with pytest.raises(StateError):
        manager.update_task(task.id, TaskUpdate(title="renamed"), users["faculty1"])


def test_max_attempts_cannot_drop_below_existing_attempts(make_task, manager, users):
    task = make_task(max_attempts=3)
    manager.submit(task.id, users["student1"].id, SubmissionInput())
    manager.submit(task.id, users["student1"].id, SubmissionInput())

    with pytest.raises(ValidationError):
        manager.update_task(task.id, TaskUpdate(max_attempts=1), users["faculty1"])
    assert task.max_attempts == 3

    assert manager.update_task(task.id, TaskUpdate(max_attempts=2), users["faculty1"]).max_attempts == 2


def test_max_points_cannot_drop_below_existing_grades(make_task, manager, users):
    task = make_task(max_points=100)
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput())
    manager.grade(sub.id, 90, "good", users["faculty1"])

    with pytest.raises(ValidationError):
        manager.update_task(task.id, TaskUpdate(max_points=10), users["faculty1"])
    assert task.max_points == 100

    assert manager.update_task(task.id, TaskUpdate(max_points=90), users["faculty1"]).max_points == 90


def test_delete_cascades_submissions_and_releases_files(make_task, manager, users, storage, db):
    task = make_task(allow_file_upload=True, max_attempts=2)
    sub = manager.submit(task.id, users["student1"].id, SubmissionInput(files=[pdf()]))
    manager.submit(task.id, users["student2"].id, SubmissionInput())
    stored = Path(storage.root) / sub.files[0].storage_ref
    assert stored.exists()

    with pytest.raises(AuthorizationError):
        manager.delete_task(task.id, users["faculty2"])

    manager.delete_task(task.id, users["faculty1"])

    assert db.query(Task).count() == 0
    assert db.query(Submission).count() == 0
    assert not stored.exists()


# --- concurrency ------------------------------------------------------------------


def test_concurrent_submits_admit_exactly_one(make_task, users, storage, clock, session_factory):
    task = make_task(max_attempts=1)
    student_id = users["student1"].id
    barrier = threading.Barrier(2)
    results = []

    def attempt():
        session = session_factory()
        try:
            mgr = TaskLifecycleManager(session, storage=storage, clock=clock)
            barrier.wait()
            try:
                results.append(mgr.submit(task.id, student_id, SubmissionInput()).attempt_number)
            except StateError as exc:
                results.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results, key=lambda r: isinstance(r, StateError))[0] == 1
    assert sum(isinstance(r, StateError) for r in results) == 1


def test_lost_race_on_the_unique_slot_surfaces_as_state_error(make_task, manager, users, storage, monkeypatch):
    task = make_task(max_attempts=2, allow_file_upload=True)
    manager.submit(task.id, users["student1"].id, SubmissionInput())
    before = stored_files(storage)

    # another process already took attempt 1 after our count was read
    monkeypatch.setattr(manager, "attempts_used", lambda task_id, student_id: 0)

    with pytest.raises(StateError):
        manager.submit(task.id, users["student1"].id, SubmissionInput(files=[pdf()]))
    assert stored_files(storage) == before
