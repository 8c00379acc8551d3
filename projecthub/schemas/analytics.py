from pydantic import BaseModel

from projecthub.schemas.server import ServerRead


class GradeDistribution(BaseModel):
    A: int = 0
    B: int = 0
    C: int = 0
    D: int = 0
    F: int = 0


class StudentAnalytics(BaseModel):
    teams_count: int
    servers_count: int
    tasks_count: int
    completed_tasks: int
    pending_tasks: int
    average_grade: float
    completion_rate: float
    on_time_submissions: int
    on_time_rate: float
    grade_distribution: GradeDistribution


class TaskStats(BaseModel):
    total: int
    draft: int
    active: int
    archived: int


class SubmissionStats(BaseModel):
    total: int
    graded: int
    average_grade: float


class Engagement(BaseModel):
    active_teams: int
    submission_rate: float


class ServerAnalytics(BaseModel):
    server: ServerRead
    teams_count: int
    students_count: int
    task_stats: TaskStats
    submission_stats: SubmissionStats
    engagement: Engagement
