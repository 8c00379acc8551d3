from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from projecthub.core.config import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_FILE_SIZE, DEFAULT_MAX_POINTS
from projecthub.models.enums import AssignmentType, TaskPriority, TaskStatus


class TaskCreate(BaseModel):
    """
    Input of create_task.

    Shape only; the lifecycle manager owns the range and state rules
    (future due date, points, attempts, team assignment).
    """

    server_id: int
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    instructions: Optional[str] = None
    rubric: Optional[str] = None

    due_date: datetime
    max_points: int = DEFAULT_MAX_POINTS
    priority: TaskPriority = TaskPriority.MEDIUM
    assignment_type: AssignmentType = AssignmentType.TEAM

    team_ids: list[int] = Field(default_factory=list)
    student_ids: list[int] = Field(default_factory=list)
    assign_to_all: bool = False

    allow_late_submissions: bool = False
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    allow_file_upload: bool = False
    allowed_file_types: list[str] = Field(default_factory=list)
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    require_comment: bool = False

    publish_immediately: bool = True
    notify_students: bool = True


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, min_length=1)
    instructions: Optional[str] = None
    rubric: Optional[str] = None
    due_date: Optional[datetime] = None
    max_points: Optional[int] = None
    priority: Optional[TaskPriority] = None
    allow_late_submissions: Optional[bool] = None
    max_attempts: Optional[int] = None
    allow_file_upload: Optional[bool] = None
    allowed_file_types: Optional[list[str]] = None
    max_file_size: Optional[int] = None
    require_comment: Optional[bool] = None


class TaskRead(BaseModel):
    id: int
    server_id: int
    faculty_id: int
    title: str
    description: str
    instructions: Optional[str] = None
    rubric: Optional[str] = None
    due_date: datetime
    max_points: int
    priority: TaskPriority
    status: TaskStatus
    assignment_type: AssignmentType
    allow_late_submissions: bool
    max_attempts: int
    allow_file_upload: bool
    allowed_file_types: list[str]
    max_file_size: int
    require_comment: bool
    team_ids: list[int] = []
    student_ids: list[int] = []
    published_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StudentTaskRead(TaskRead):
    submission_status: str  # "pending" until the first attempt, then the latest attempt's status
    attempts_used: int = 0
    submitted_at: Optional[datetime] = None
    grade: Optional[int] = None
    feedback: Optional[str] = None
    can_submit: bool = False
    can_resubmit: bool = False


class FacultyTaskRead(TaskRead):
    total_submissions: int = 0
    pending_submissions: int = 0
    graded_submissions: int = 0
