from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from projecthub.core.config import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_FILE_SIZE, DEFAULT_MAX_POINTS
from projecthub.db.base_class import Base, utcnow
from projecthub.models.enums import AssignmentType, TaskPriority, TaskStatus, enum_column

task_teams = Table(
    "task_teams",
    Base.metadata,
    Column("task_id", ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("team_id", ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True),
)

task_students = Table(
    "task_students",
    Base.metadata,
    Column("task_id", ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(Integer, ForeignKey("project_servers.id", ondelete="CASCADE"), nullable=False, index=True)
    faculty_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    instructions = Column(Text, nullable=True)
    rubric = Column(Text, nullable=True)

    due_date = Column(DateTime(timezone=True), nullable=False)
    max_points = Column(Integer, nullable=False, default=DEFAULT_MAX_POINTS)
    priority = Column(enum_column(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)
    status = Column(enum_column(TaskStatus), nullable=False, default=TaskStatus.DRAFT, index=True)
    assignment_type = Column(enum_column(AssignmentType), nullable=False, default=AssignmentType.TEAM)

    allow_late_submissions = Column(Boolean, nullable=False, default=False)
    max_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    allow_file_upload = Column(Boolean, nullable=False, default=False)
    allowed_file_types = Column(JSON, nullable=False, default=list)  # empty = all allowed
    max_file_size = Column(Integer, nullable=False, default=DEFAULT_MAX_FILE_SIZE)
    require_comment = Column(Boolean, nullable=False, default=False)

    published_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=True)

    __table_args__ = (
        CheckConstraint("max_points >= 1", name="ck_tasks_max_points"),
        CheckConstraint("max_attempts >= 1", name="ck_tasks_max_attempts"),
        CheckConstraint("max_file_size >= 1", name="ck_tasks_max_file_size"),
    )

    server = relationship("ProjectServer", back_populates="tasks")
    faculty = relationship("User")
    teams = relationship("Team", secondary=task_teams)
    students = relationship("User", secondary=task_students)

    submissions = relationship(
        "Submission",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="Submission.attempt_number",
    )

    @property
    def team_ids(self) -> list[int]:
        return [t.id for t in self.teams]

    @property
    def student_ids(self) -> list[int]:
        return [s.id for s in self.students]
