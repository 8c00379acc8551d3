from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from projecthub.core.deps import get_db
from projecthub.core.permissions import require_faculty
from projecthub.models.enums import SubmissionStatus, TaskStatus
from projecthub.models.server import ProjectServer, server_members
from projecthub.models.submission import Submission
from projecthub.models.task import Task
from projecthub.models.team import Team
from projecthub.models.user import User
from projecthub.schemas.dashboard import ServerDashboardRow

router = APIRouter(tags=["faculty"])


@router.get("/faculty/dashboard", response_model=list[ServerDashboardRow])
def faculty_dashboard(
    db: Session = Depends(get_db),
    me: User = Depends(require_faculty),
):
    servers = db.query(ProjectServer).filter(ProjectServer.faculty_id == me.id).order_by(ProjectServer.id).all()

    rows: list[ServerDashboardRow] = []

    for server in servers:
        total_students = (
            db.query(func.count())
            .select_from(server_members)
            .filter(server_members.c.server_id == server.id)
            .scalar()
        ) or 0

        total_teams = (
            db.query(func.count(Team.id))
            .filter(Team.server_id == server.id)
            .scalar()
        ) or 0

        total_tasks = (
            db.query(func.count(Task.id))
            .filter(Task.server_id == server.id)
            .scalar()
        ) or 0

        active_tasks = (
            db.query(func.count(Task.id))
            .filter(Task.server_id == server.id, Task.status == TaskStatus.ACTIVE)
            .scalar()
        ) or 0

        total_submissions = (
            db.query(func.count(Submission.id))
            .join(Task, Submission.task_id == Task.id)
            .filter(Task.server_id == server.id)
            .scalar()
        ) or 0

        ungraded_submissions = (
            db.query(func.count(Submission.id))
            .join(Task, Submission.task_id == Task.id)
            .filter(
                Task.server_id == server.id,
                Submission.status.in_([SubmissionStatus.SUBMITTED, SubmissionStatus.UNDER_REVIEW]),
            )
            .scalar()
        ) or 0

        rows.append(
            ServerDashboardRow(
                server_id=server.id,
                server_title=server.title,
                total_students=total_students,
                total_teams=total_teams,
                total_tasks=total_tasks,
                active_tasks=active_tasks,
                total_submissions=total_submissions,
                ungraded_submissions=ungraded_submissions,
            )
        )

    return rows
