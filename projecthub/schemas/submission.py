from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from projecthub.core.config import MAX_COMMENT_LENGTH, MAX_FEEDBACK_LENGTH
from projecthub.models.enums import SubmissionStatus


class SubmissionFileInput(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: Optional[str] = None
    size: int = Field(ge=0)
    data: bytes = Field(default=b"", repr=False)


class SubmissionInput(BaseModel):
    comment: str = Field(default="", max_length=MAX_COMMENT_LENGTH)
    collaborators: list[EmailStr] = Field(default_factory=list)
    files: list[SubmissionFileInput] = Field(default_factory=list)

    @field_validator("comment")
    @classmethod
    def strip_comment(cls, v: str) -> str:
        return v.strip()

    @field_validator("collaborators")
    @classmethod
    def normalize_collaborators(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for email in v:
            email = email.strip().lower()
            if email not in seen:
                seen.append(email)
        return seen


class SubmissionFileRead(BaseModel):
    id: int
    position: int
    original_name: str
    content_type: Optional[str] = None
    size: int

    class Config:
        from_attributes = True


class SubmissionRead(BaseModel):
    id: int
    task_id: int
    student_id: int
    team_id: Optional[int] = None
    attempt_number: int
    comment: str
    collaborators: list[str]
    files: list[SubmissionFileRead] = []
    submitted_at: datetime
    is_late: bool
    status: SubmissionStatus
    grade: Optional[int] = None
    feedback: Optional[str] = None
    graded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class GradeRequest(BaseModel):
    student_id: int
    grade: int
    feedback: Optional[str] = Field(default=None, max_length=MAX_FEEDBACK_LENGTH)
