from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from projecthub.db.base_class import Base, utcnow
from projecthub.models.enums import SubmissionStatus, enum_column


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, index=True)

    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="SET NULL"), nullable=True)

    attempt_number = Column(Integer, nullable=False, default=1)
    comment = Column(Text, nullable=False, default="")
    collaborators = Column(JSON, nullable=False, default=list)

    submitted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    is_late = Column(Boolean, nullable=False, default=False)
    status = Column(enum_column(SubmissionStatus), nullable=False, default=SubmissionStatus.SUBMITTED, index=True)

    # Grading fields (nullable until graded)
    grade = Column(Integer, nullable=True)
    feedback = Column(Text, nullable=True)
    graded_at = Column(DateTime(timezone=True), nullable=True)
    graded_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # one row per attempt; the constraint is what makes attempt slots race-safe
    __table_args__ = (
        UniqueConstraint("task_id", "student_id", "attempt_number", name="uq_submission_task_student_attempt"),
    )

    task = relationship("Task", back_populates="submissions")
    student = relationship("User", back_populates="submissions", foreign_keys=[student_id])
    files = relationship(
        "SubmissionFile",
        back_populates="submission",
        cascade="all, delete-orphan",
        order_by="SubmissionFile.position",
    )


class SubmissionFile(Base):
    __tablename__ = "submission_files"

    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(Integer, ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    storage_ref = Column(String(255), nullable=False)
    original_name = Column(String(255), nullable=False)
    content_type = Column(String(127), nullable=True)
    size = Column(Integer, nullable=False)

    submission = relationship("Submission", back_populates="files")
