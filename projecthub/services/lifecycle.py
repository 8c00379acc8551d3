"""
Task and submission lifecycle.

Every "can this happen" decision for tasks and submissions lives here:

    Task:        draft -> active -> archived
    Submission:  submitted -> under_review -> graded -> returned
                 (a returned attempt may be followed by a fresh attempt)

Time-dependent checks are pure functions of (task, submission, now); the
manager takes an injected clock so they can be tested deterministically.
Persistence goes through the SQLAlchemy session, notifications through a
`NotificationSink`, file bytes through a `FileStorage`.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from projecthub.core.config import MAX_ATTEMPTS_LIMIT, MAX_FILES_PER_SUBMISSION, VALID_FILE_TYPES
from projecthub.core.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from projecthub.models.enums import AssignmentType, NotificationType, Role, SubmissionStatus, TaskStatus
from projecthub.models.server import ProjectServer
from projecthub.models.submission import Submission, SubmissionFile
from projecthub.models.task import Task
from projecthub.models.team import Team
from projecthub.models.user import User
from projecthub.schemas.submission import SubmissionInput
from projecthub.schemas.task import TaskCreate, TaskUpdate
from projecthub.services.notifications import NotificationEvent, NotificationSink
from projecthub.services.storage import FileStorage, file_extension

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

GRADABLE_STATUSES = (SubmissionStatus.SUBMITTED, SubmissionStatus.UNDER_REVIEW, SubmissionStatus.GRADED)


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands DateTime(timezone=True) columns back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- pure predicates -------------------------------------------------------


def is_late(task: Task, at: datetime) -> bool:
    return as_utc(at) > as_utc(task.due_date)


def deadline_open(task: Task, now: datetime) -> bool:
    return task.allow_late_submissions or not is_late(task, now)


def can_submit(task: Task, attempts_used: int, now: datetime) -> bool:
    return (
        task.status == TaskStatus.ACTIVE
        and attempts_used < task.max_attempts
        and deadline_open(task, now)
    )


def can_resubmit(submission: Submission, task: Task, now: datetime) -> bool:
    """Whether another attempt may follow `submission`. Never cache: depends on `now`."""
    return submission.attempt_number < task.max_attempts and deadline_open(task, now)


def normalize_file_types(types: Iterable[str]) -> list[str]:
    """Lower-case, strip dots, dedupe and drop anything outside VALID_FILE_TYPES."""
    result: list[str] = []
    for t in types:
        t = t.strip().lower().lstrip(".")
        if t in VALID_FILE_TYPES and t not in result:
            result.append(t)
    return result


def submission_counts(task: Task) -> dict[str, int]:
    subs = task.submissions
    return {
        "total_submissions": len(subs),
        "pending_submissions": sum(1 for s in subs if s.status == SubmissionStatus.SUBMITTED),
        "graded_submissions": sum(1 for s in subs if s.status == SubmissionStatus.GRADED),
    }


# --- attempt slot serialization --------------------------------------------


class KeyedLock:
    """One lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple, list] = {}

    @contextmanager
    def hold(self, key: tuple):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


_attempt_slots = KeyedLock()


class TaskLifecycleManager:
    def __init__(
        self,
        db: Session,
        sink: NotificationSink | None = None,
        storage: FileStorage | None = None,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.sink = sink
        self.storage = storage
        self.clock = clock

    # --- lookups / guards ---------------------------------------------------

    def _get_task(self, task_id: int) -> Task:
        task = self.db.get(Task, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    def _get_submission(self, submission_id: int) -> Submission:
        submission = self.db.get(Submission, submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        return submission

    def _get_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    def _ensure_owner(task: Task, actor: User, action: str) -> None:
        if actor.role == Role.ADMIN:
            return
        if actor.role != Role.FACULTY or task.faculty_id != actor.id:
            raise AuthorizationError(f"You can only {action} your own tasks")

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _notify(self, events: Iterable[NotificationEvent]) -> None:
        if self.sink is None:
            return
        for event in events:
            try:
                self.sink.publish(event)
            except Exception:
                # the transition is already committed; delivery is best effort
                logger.exception(
                    "failed to dispatch %s notification to user %s",
                    event.type.value,
                    event.recipient_id,
                )

    def _validate_settings(
        self,
        *,
        now: datetime,
        due_date: datetime | None = None,
        max_points: int | None = None,
        max_attempts: int | None = None,
        max_file_size: int | None = None,
    ) -> None:
        if due_date is not None and as_utc(due_date) <= as_utc(now):
            raise ValidationError("Due date must be in the future")
        if max_points is not None and max_points < 1:
            raise ValidationError("max_points must be at least 1")
        if max_attempts is not None and not 1 <= max_attempts <= MAX_ATTEMPTS_LIMIT:
            raise ValidationError(f"max_attempts must be between 1 and {MAX_ATTEMPTS_LIMIT}")
        if max_file_size is not None and max_file_size < 1:
            raise ValidationError("max_file_size must be a positive number of bytes")

    @staticmethod
    def _resolve_file_types(allow_file_upload: bool, requested: list[str]) -> list[str]:
        if not allow_file_upload or not requested:
            return []
        valid = normalize_file_types(requested)
        if not valid:
            raise ValidationError(
                f"No valid file types selected. Valid types: {', '.join(VALID_FILE_TYPES)}"
            )
        return valid

    def _resolve_assignees(self, server: ProjectServer, payload: TaskCreate) -> tuple[list[Team], list[User]]:
        if payload.assignment_type == AssignmentType.TEAM:
            if payload.assign_to_all:
                teams = list(server.teams)
            else:
                if not payload.team_ids:
                    raise ValidationError('Please select at least one team or choose "assign to all"')
                wanted = set(payload.team_ids)
                teams = self.db.scalars(
                    select(Team).where(Team.id.in_(wanted), Team.server_id == server.id)
                ).all()
                if len(teams) != len(wanted):
                    raise ValidationError("Some selected teams were not found in this server")
            if not teams:
                raise ValidationError("No teams found in this server. Students need to create teams first.")
            return list(teams), []

        if not payload.student_ids:
            # empty means every member of the server
            return [], []
        wanted = set(payload.student_ids)
        students = [m for m in server.members if m.id in wanted]
        if len(students) != len(wanted):
            raise ValidationError("Some selected students are not members of this server")
        return [], students

    def assigned_student_ids(self, task: Task) -> set[int]:
        if task.assignment_type == AssignmentType.TEAM:
            return {m.id for team in task.teams for m in team.members}
        if task.students:
            return {s.id for s in task.students}
        return {m.id for m in task.server.members}

    def _team_of(self, task: Task, student: User) -> Team | None:
        for team in task.teams:
            if any(m.id == student.id for m in team.members):
                return team
        return None

    def is_assigned(self, task: Task, student: User) -> bool:
        return student.id in self.assigned_student_ids(task)

    def _assignment_events(self, task: Task) -> list[NotificationEvent]:
        return [
            NotificationEvent(
                recipient_id=student_id,
                type=NotificationType.TASK_ASSIGNED,
                title="New Task Assigned",
                message=f'You have a new task: "{task.title}" in {task.server.title}',
                task_id=task.id,
            )
            for student_id in sorted(self.assigned_student_ids(task))
        ]

    # --- task operations ----------------------------------------------------

    def create_task(self, payload: TaskCreate, actor: User) -> Task:
        if actor.role not in (Role.FACULTY, Role.ADMIN):
            raise AuthorizationError("Only faculty can create tasks")

        server = self.db.get(ProjectServer, payload.server_id)
        if server is None:
            raise NotFoundError("Project server not found")
        if server.faculty_id != actor.id and actor.role != Role.ADMIN:
            raise AuthorizationError("You can only create tasks for your own servers")

        now = self.clock()
        self._validate_settings(
            now=now,
            due_date=payload.due_date,
            max_points=payload.max_points,
            max_attempts=payload.max_attempts,
            max_file_size=payload.max_file_size,
        )
        allowed_file_types = self._resolve_file_types(payload.allow_file_upload, payload.allowed_file_types)
        teams, students = self._resolve_assignees(server, payload)

        publish = payload.publish_immediately
        task = Task(
            server_id=server.id,
            faculty_id=server.faculty_id,
            title=payload.title.strip(),
            description=payload.description.strip(),
            instructions=payload.instructions,
            rubric=payload.rubric,
            due_date=as_utc(payload.due_date),
            max_points=payload.max_points,
            priority=payload.priority,
            status=TaskStatus.ACTIVE if publish else TaskStatus.DRAFT,
            assignment_type=payload.assignment_type,
            allow_late_submissions=payload.allow_late_submissions,
            max_attempts=payload.max_attempts,
            allow_file_upload=payload.allow_file_upload,
            allowed_file_types=allowed_file_types,
            max_file_size=payload.max_file_size,
            require_comment=payload.require_comment,
            published_at=now if publish else None,
            teams=teams,
            students=students,
        )
        self.db.add(task)
        self._commit()
        self.db.refresh(task)

        logger.info("task %s created by %s (status=%s)", task.id, actor.id, task.status.value)

        if publish and payload.notify_students:
            self._notify(self._assignment_events(task))
        return task

    def publish_task(self, task_id: int, actor: User, notify_students: bool = True) -> Task:
        task = self._get_task(task_id)
        self._ensure_owner(task, actor, "publish")
        if task.status != TaskStatus.DRAFT:
            raise StateError(f"Only draft tasks can be published (task is {task.status.value})")

        task.status = TaskStatus.ACTIVE
        task.published_at = self.clock()
        self._commit()
        self.db.refresh(task)

        logger.info("task %s published by %s", task.id, actor.id)
        if notify_students:
            self._notify(self._assignment_events(task))
        return task

    def update_task(self, task_id: int, changes: TaskUpdate, actor: User) -> Task:
        task = self._get_task(task_id)
        self._ensure_owner(task, actor, "update")
        if task.status == TaskStatus.ARCHIVED:
            raise StateError("Archived tasks cannot be edited")

        data = changes.model_dump(exclude_unset=True)
        none_fields = [k for k, v in data.items() if v is None and k not in ("instructions", "rubric")]
        if none_fields:
            raise ValidationError(f"Fields cannot be null: {', '.join(sorted(none_fields))}")

        self._validate_settings(
            now=self.clock(),
            due_date=data.get("due_date"),
            max_points=data.get("max_points"),
            max_attempts=data.get("max_attempts"),
            max_file_size=data.get("max_file_size"),
        )
        self._validate_against_submissions(task, data.get("max_attempts"), data.get("max_points"))
        if "due_date" in data:
            data["due_date"] = as_utc(data["due_date"])
        if "allowed_file_types" in data or "allow_file_upload" in data:
            data["allowed_file_types"] = self._resolve_file_types(
                data.get("allow_file_upload", task.allow_file_upload),
                data.get("allowed_file_types", task.allowed_file_types),
            )

        for field, value in data.items():
            setattr(task, field, value)
        self._commit()
        self.db.refresh(task)

        logger.info("task %s updated by %s (%s)", task.id, actor.id, ", ".join(sorted(data)))
        return task

    def _validate_against_submissions(self, task: Task, max_attempts: int | None, max_points: int | None) -> None:
        # recorded attempts and grades must stay within the task's limits
        if max_attempts is not None:
            highest_attempt = self.db.scalar(
                select(func.max(Submission.attempt_number)).where(Submission.task_id == task.id)
            )
            if highest_attempt is not None and max_attempts < highest_attempt:
                raise ValidationError(
                    f"max_attempts cannot be lower than an existing attempt ({highest_attempt})"
                )
        if max_points is not None:
            highest_grade = self.db.scalar(
                select(func.max(Submission.grade)).where(Submission.task_id == task.id)
            )
            if highest_grade is not None and max_points < highest_grade:
                raise ValidationError(f"max_points cannot be lower than an existing grade ({highest_grade})")

    def archive_task(self, task_id: int, actor: User) -> Task:
        task = self._get_task(task_id)
        self._ensure_owner(task, actor, "archive")
        if task.status != TaskStatus.ACTIVE:
            raise StateError(f"Only active tasks can be archived (task is {task.status.value})")

        task.status = TaskStatus.ARCHIVED
        task.archived_at = self.clock()
        self._commit()
        self.db.refresh(task)

        logger.info("task %s archived by %s", task.id, actor.id)
        return task

    def delete_task(self, task_id: int, actor: User) -> None:
        task = self._get_task(task_id)
        self._ensure_owner(task, actor, "delete")

        refs = [f.storage_ref for s in task.submissions for f in s.files]
        self.db.delete(task)
        self._commit()
        logger.info("task %s deleted by %s (%d stored files)", task_id, actor.id, len(refs))

        self._release(refs)

    def _release(self, refs: list[str]) -> None:
        if self.storage is None:
            return
        for ref in refs:
            try:
                self.storage.delete(ref)
            except Exception:
                logger.exception("failed to release stored file %s", ref)

    # --- submissions ----------------------------------------------------------

    def attempts_used(self, task_id: int, student_id: int) -> int:
        return self.db.scalar(
            select(func.count(Submission.id)).where(
                Submission.task_id == task_id,
                Submission.student_id == student_id,
            )
        ) or 0

    def latest_submission(self, task_id: int, student_id: int) -> Submission | None:
        return self.db.scalars(
            select(Submission)
            .where(Submission.task_id == task_id, Submission.student_id == student_id)
            .order_by(Submission.attempt_number.desc())
            .limit(1)
        ).first()

    def upload_limit(self, task_id: int) -> int:
        """Per-file byte limit of the task, known before any upload is read."""
        return self._get_task(task_id).max_file_size

    def _validate_submission(self, task: Task, data: SubmissionInput) -> None:
        if task.require_comment and not data.comment:
            raise ValidationError("A comment is required for this task")

        if not data.files:
            return
        if not task.allow_file_upload:
            raise ValidationError("File uploads are not allowed for this task")
        if len(data.files) > MAX_FILES_PER_SUBMISSION:
            raise ValidationError(f"At most {MAX_FILES_PER_SUBMISSION} files can be submitted")

        allowed = task.allowed_file_types or []
        for f in data.files:
            ext = file_extension(f.filename)
            if allowed and ext not in allowed:
                raise ValidationError(
                    f"File type '{ext}' is not allowed for this task. Allowed types: {', '.join(allowed)}"
                )
            if f.size > task.max_file_size:
                raise ValidationError(
                    f"File '{f.filename}' exceeds the maximum size of {task.max_file_size} bytes"
                )

    def _store_files(self, data: SubmissionInput) -> list[str]:
        if not data.files:
            return []
        if self.storage is None:
            raise RuntimeError("file storage is not configured")

        refs: list[str] = []
        try:
            for f in data.files:
                refs.append(self.storage.store(f.data, f.filename, f.content_type))
        except Exception:
            self._release(refs)
            raise
        return refs

    def submit(self, task_id: int, student_id: int, data: SubmissionInput) -> Submission:
        student = self._get_user(student_id)
        task = self._get_task(task_id)

        if student.role != Role.STUDENT:
            raise AuthorizationError("Only students can submit tasks")
        if not self.is_assigned(task, student):
            raise AuthorizationError("You can only submit tasks assigned to you or your teams")
        if task.status != TaskStatus.ACTIVE:
            raise StateError("Task is not active")

        # the whole attempt is rejected before anything is stored
        self._validate_submission(task, data)
        team = self._team_of(task, student) if task.assignment_type == AssignmentType.TEAM else None

        with _attempt_slots.hold((task.id, student.id)):
            now = self.clock()
            if not deadline_open(task, now):
                raise StateError("Task submission deadline has passed")

            used = self.attempts_used(task.id, student.id)
            if used >= task.max_attempts:
                raise StateError(f"Maximum attempts ({task.max_attempts}) reached")

            refs = self._store_files(data)
            submission = Submission(
                task_id=task.id,
                student_id=student.id,
                team_id=team.id if team else None,
                attempt_number=used + 1,
                comment=data.comment,
                collaborators=list(data.collaborators),
                submitted_at=now,
                is_late=is_late(task, now),
                status=SubmissionStatus.SUBMITTED,
                files=[
                    SubmissionFile(
                        position=i,
                        storage_ref=ref,
                        original_name=f.filename,
                        content_type=f.content_type,
                        size=f.size,
                    )
                    for i, (f, ref) in enumerate(zip(data.files, refs))
                ],
            )
            self.db.add(submission)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                self._release(refs)
                raise StateError("This attempt was already submitted")
            except Exception:
                self.db.rollback()
                self._release(refs)
                raise

        self.db.refresh(submission)
        logger.info(
            "task %s attempt %d submitted by %s (late=%s, files=%d)",
            task.id,
            submission.attempt_number,
            student.id,
            submission.is_late,
            len(refs),
        )

        name = student.full_name or student.email
        self._notify(
            [
                NotificationEvent(
                    recipient_id=task.faculty_id,
                    type=NotificationType.TASK_SUBMITTED,
                    title="Task Submitted",
                    message=f'{name} has submitted "{task.title}" (attempt {submission.attempt_number})',
                    task_id=task.id,
                    submission_id=submission.id,
                )
            ]
        )
        return submission

    def can_resubmit(self, submission: Submission) -> bool:
        return can_resubmit(submission, submission.task, self.clock())

    def mark_under_review(self, submission_id: int, actor: User) -> Submission:
        submission = self._get_submission(submission_id)
        self._ensure_owner(submission.task, actor, "review submissions of")
        if submission.status != SubmissionStatus.SUBMITTED:
            raise StateError(
                f"Only submitted attempts can be put under review (submission is {submission.status.value})"
            )

        submission.status = SubmissionStatus.UNDER_REVIEW
        self._commit()
        self.db.refresh(submission)
        logger.info("submission %s under review by %s", submission.id, actor.id)
        return submission

    def grade(self, submission_id: int, grade: int, feedback: str | None, actor: User) -> Submission:
        submission = self._get_submission(submission_id)
        task = submission.task
        self._ensure_owner(task, actor, "grade")

        if not 0 <= grade <= task.max_points:
            raise ValidationError(f"Grade must be between 0 and {task.max_points}")
        if submission.status not in GRADABLE_STATUSES:
            raise StateError(f"Submission cannot be graded (submission is {submission.status.value})")

        # concurrent grading of one submission: last writer wins
        submission.grade = grade
        submission.feedback = feedback
        submission.status = SubmissionStatus.GRADED
        submission.graded_at = self.clock()
        submission.graded_by_id = actor.id
        self._commit()
        self.db.refresh(submission)

        logger.info("submission %s graded %d/%d by %s", submission.id, grade, task.max_points, actor.id)

        self._notify(
            [
                NotificationEvent(
                    recipient_id=submission.student_id,
                    type=NotificationType.TASK_GRADED,
                    title="Task Graded",
                    message=f'Your submission for "{task.title}" has been graded: {grade}/{task.max_points}',
                    task_id=task.id,
                    submission_id=submission.id,
                )
            ]
        )
        return submission

    def grade_latest(self, task_id: int, student_id: int, grade: int, feedback: str | None, actor: User) -> Submission:
        task = self._get_task(task_id)
        self._ensure_owner(task, actor, "grade")
        submission = self.latest_submission(task.id, student_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        return self.grade(submission.id, grade, feedback, actor)

    def return_submission(self, submission_id: int, actor: User) -> Submission:
        submission = self._get_submission(submission_id)
        task = submission.task
        self._ensure_owner(task, actor, "return submissions of")
        if submission.status != SubmissionStatus.GRADED:
            raise StateError(f"Only graded submissions can be returned (submission is {submission.status.value})")

        submission.status = SubmissionStatus.RETURNED
        self._commit()
        self.db.refresh(submission)
        logger.info("submission %s returned by %s", submission.id, actor.id)

        self._notify(
            [
                NotificationEvent(
                    recipient_id=submission.student_id,
                    type=NotificationType.SUBMISSION_RETURNED,
                    title="Submission Returned",
                    message=f'Your graded submission for "{task.title}" has been returned',
                    task_id=task.id,
                    submission_id=submission.id,
                )
            ]
        )
        return submission

    # --- read projections -----------------------------------------------------

    def server_tasks(self, server_id: int, actor: User) -> list[Task]:
        server = self.db.get(ProjectServer, server_id)
        if server is None:
            raise NotFoundError("Project server not found")

        stmt = select(Task).where(Task.server_id == server.id).order_by(Task.created_at.desc(), Task.id.desc())
        if actor.role == Role.ADMIN or server.faculty_id == actor.id:
            return list(self.db.scalars(stmt).all())
        if not any(m.id == actor.id for m in server.members):
            raise AuthorizationError("You are not a member of this server")
        return list(self.db.scalars(stmt.where(Task.status == TaskStatus.ACTIVE)).all())

    def visible_task(self, task_id: int, actor: User) -> Task:
        task = self._get_task(task_id)
        if actor.role == Role.ADMIN or task.faculty_id == actor.id:
            return task
        # drafts and tasks assigned to others stay invisible to students
        if task.status == TaskStatus.DRAFT or not self.is_assigned(task, actor):
            raise NotFoundError("Task not found")
        return task

    def student_tasks(self, student: User) -> list[Task]:
        server_ids = [s.id for s in student.servers]
        if not server_ids:
            return []
        tasks = self.db.scalars(
            select(Task)
            .where(Task.server_id.in_(server_ids), Task.status == TaskStatus.ACTIVE)
            .order_by(Task.created_at.desc(), Task.id.desc())
        ).all()
        return [t for t in tasks if self.is_assigned(t, student)]

    def student_task_summary(self, task: Task, student: User) -> dict:
        latest = self.latest_submission(task.id, student.id)
        now = self.clock()
        if latest is None:
            return {
                "submission_status": "pending",
                "attempts_used": 0,
                "can_submit": can_submit(task, 0, now),
                "can_resubmit": False,
            }
        return {
            "submission_status": latest.status.value,
            "attempts_used": latest.attempt_number,
            "submitted_at": latest.submitted_at,
            "grade": latest.grade,
            "feedback": latest.feedback,
            "can_submit": can_submit(task, latest.attempt_number, now),
            "can_resubmit": can_resubmit(latest, task, now),
        }

    def faculty_tasks(self, actor: User) -> list[Task]:
        if actor.role not in (Role.FACULTY, Role.ADMIN):
            raise AuthorizationError("Faculty access required")
        return list(
            self.db.scalars(
                select(Task)
                .where(Task.faculty_id == actor.id)
                .order_by(Task.created_at.desc(), Task.id.desc())
            ).all()
        )

    def task_submissions(self, task_id: int, actor: User) -> list[Submission]:
        task = self._get_task(task_id)
        self._ensure_owner(task, actor, "view submissions for")
        return list(task.submissions)

    def submission_file(self, task_id: int, file_id: int, actor: User) -> SubmissionFile:
        file = self.db.get(SubmissionFile, file_id)
        if file is None or file.submission.task_id != task_id:
            raise NotFoundError("File not found")

        task = file.submission.task
        if actor.role == Role.ADMIN or task.faculty_id == actor.id:
            return file
        if file.submission.student_id == actor.id:
            return file
        if task.assignment_type == AssignmentType.TEAM and self._team_of(task, actor) is not None:
            return file
        raise AuthorizationError("Access denied")
