from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException

from projecthub.core.current_user import get_current_user
from projecthub.core.deps import get_lifecycle
from projecthub.core.permissions import require_student
from projecthub.models.enums import Role, TaskStatus
from projecthub.models.server import ProjectServer
from projecthub.models.submission import Submission
from projecthub.models.task import Task
from projecthub.models.user import User
from projecthub.schemas.analytics import (
    Engagement,
    GradeDistribution,
    ServerAnalytics,
    StudentAnalytics,
    SubmissionStats,
    TaskStats,
)
from projecthub.schemas.server import ServerRead
from projecthub.services.lifecycle import TaskLifecycleManager, as_utc

router = APIRouter()

ACTIVE_WINDOW = timedelta(days=7)


def percent(part: float, whole: float, digits: int = 1) -> float:
    return round(part / whole * 100, digits) if whole else 0.0


def grade_percent(submission: Submission, task: Task) -> float:
    """Grades are compared on a 0-100 scale whatever the task's max_points."""
    return submission.grade * 100 / task.max_points


def letter(score: float) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


@router.get("/student", response_model=StudentAnalytics)
def student_analytics(
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
    me: User = Depends(require_student),
):
    tasks = lifecycle.student_tasks(me)

    # a task counts once, by the student's latest attempt
    latest = [(t, lifecycle.latest_submission(t.id, me.id)) for t in tasks]
    submitted = [(t, s) for t, s in latest if s is not None]
    graded = [grade_percent(s, t) for t, s in submitted if s.grade is not None]
    on_time = sum(1 for _, s in submitted if not s.is_late)

    distribution = GradeDistribution()
    for score in graded:
        key = letter(score)
        setattr(distribution, key, getattr(distribution, key) + 1)

    return StudentAnalytics(
        teams_count=len(me.teams),
        servers_count=len(me.servers),
        tasks_count=len(tasks),
        completed_tasks=len(submitted),
        pending_tasks=len(tasks) - len(submitted),
        average_grade=round(sum(graded) / len(graded), 2) if graded else 0.0,
        completion_rate=percent(len(submitted), len(tasks)),
        on_time_submissions=on_time,
        on_time_rate=percent(on_time, len(submitted)),
        grade_distribution=distribution,
    )


@router.get("/server/{server_id}", response_model=ServerAnalytics)
def server_analytics(
    server_id: int,
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
    me: User = Depends(get_current_user),
):
    db = lifecycle.db
    server = db.query(ProjectServer).filter(ProjectServer.id == server_id).first()
    if not server:
        raise HTTPException(status_code=404, detail="Project server not found")

    is_owner = server.faculty_id == me.id or me.role == Role.ADMIN
    is_member = any(m.id == me.id for m in server.members)
    if not (is_owner or is_member):
        raise HTTPException(status_code=403, detail="Not a member of this server")

    tasks = db.query(Task).filter(Task.server_id == server.id).all()
    submissions = [s for t in tasks for s in t.submissions]
    graded = [grade_percent(s, s.task) for s in submissions if s.grade is not None]

    since = lifecycle.clock() - ACTIVE_WINDOW
    recent_students = {s.student_id for s in submissions if as_utc(s.submitted_at) > since}
    active_teams = sum(1 for team in server.teams if recent_students & set(team.member_ids))

    # share of (active task, assigned student) pairs that have at least one attempt
    expected = 0
    delivered = 0
    for task in tasks:
        if task.status != TaskStatus.ACTIVE:
            continue
        assigned = lifecycle.assigned_student_ids(task)
        expected += len(assigned)
        delivered += len(assigned & {s.student_id for s in task.submissions})

    return ServerAnalytics(
        server=ServerRead.model_validate(server),
        teams_count=len(server.teams),
        students_count=len(server.members),
        task_stats=TaskStats(
            total=len(tasks),
            draft=sum(1 for t in tasks if t.status == TaskStatus.DRAFT),
            active=sum(1 for t in tasks if t.status == TaskStatus.ACTIVE),
            archived=sum(1 for t in tasks if t.status == TaskStatus.ARCHIVED),
        ),
        submission_stats=SubmissionStats(
            total=len(submissions),
            graded=len(graded),
            average_grade=round(sum(graded) / len(graded), 2) if graded else 0.0,
        ),
        engagement=Engagement(active_teams=active_teams, submission_rate=percent(delivered, expected)),
    )
