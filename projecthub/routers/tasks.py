import json
import logging
from typing import Optional

import pydantic
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import FileResponse

from projecthub.core.config import MAX_FILES_PER_SUBMISSION
from projecthub.core.current_user import get_current_user
from projecthub.core.deps import get_file_storage, get_lifecycle
from projecthub.core.errors import ValidationError
from projecthub.core.permissions import require_faculty, require_student
from projecthub.models.user import User
from projecthub.schemas.submission import GradeRequest, SubmissionFileInput, SubmissionInput, SubmissionRead
from projecthub.schemas.task import FacultyTaskRead, StudentTaskRead, TaskCreate, TaskRead, TaskUpdate
from projecthub.services.lifecycle import TaskLifecycleManager, submission_counts
from projecthub.services.storage import LocalFileStorage

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_collaborators(raw: str) -> list:
    if not raw or not raw.strip():
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("collaborators must be a JSON array of email addresses")
    if not isinstance(value, list):
        raise ValidationError("collaborators must be a JSON array of email addresses")
    return value


def _read_upload(upload: UploadFile, limit: int) -> bytes:
    """Read at most `limit` bytes; anything larger is rejected without buffering the rest."""
    name = upload.filename or "file"
    if upload.size is not None and upload.size > limit:
        raise ValidationError(f"File '{name}' exceeds the maximum size of {limit} bytes")
    data = upload.file.read(limit + 1)
    if len(data) > limit:
        raise ValidationError(f"File '{name}' exceeds the maximum size of {limit} bytes")
    return data


def _build_submission_input(
    comment: str, collaborators: str, files: list[UploadFile], max_file_size: int
) -> SubmissionInput:
    if len(files) > MAX_FILES_PER_SUBMISSION:
        raise ValidationError(f"At most {MAX_FILES_PER_SUBMISSION} files can be submitted")

    file_inputs = []
    for upload in files:
        data = _read_upload(upload, max_file_size)
        file_inputs.append(
            {
                "filename": upload.filename or "file",
                "content_type": upload.content_type,
                "size": len(data),
                "data": data,
            }
        )

    try:
        return SubmissionInput(
            comment=comment,
            collaborators=_parse_collaborators(collaborators),
            files=[SubmissionFileInput(**f) for f in file_inputs],
        )
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise ValidationError(f"Invalid {where}: {first['msg']}")


@router.post("/create", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreate,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.create_task(payload, faculty)


@router.get("/server/{server_id}", response_model=list[TaskRead])
def list_server_tasks(
    server_id: int,
    me: User = Depends(get_current_user),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.server_tasks(server_id, me)


@router.get("/student-tasks", response_model=list[StudentTaskRead])
def list_student_tasks(
    me: User = Depends(require_student),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    rows: list[StudentTaskRead] = []
    for task in lifecycle.student_tasks(me):
        base = TaskRead.model_validate(task).model_dump()
        rows.append(StudentTaskRead(**base, **lifecycle.student_task_summary(task, me)))
    return rows


@router.get("/faculty", response_model=list[FacultyTaskRead])
def list_faculty_tasks(
    me: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    rows: list[FacultyTaskRead] = []
    for task in lifecycle.faculty_tasks(me):
        base = TaskRead.model_validate(task).model_dump()
        rows.append(FacultyTaskRead(**base, **submission_counts(task)))
    return rows


@router.get("/{task_id}", response_model=TaskRead)
def get_task(
    task_id: int,
    me: User = Depends(get_current_user),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.visible_task(task_id, me)


@router.put("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: int,
    payload: TaskUpdate,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.update_task(task_id, payload, faculty)


@router.post("/{task_id}/publish", response_model=TaskRead)
def publish_task(
    task_id: int,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.publish_task(task_id, faculty)


@router.post("/{task_id}/archive", response_model=TaskRead)
def archive_task(
    task_id: int,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.archive_task(task_id, faculty)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: int,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    lifecycle.delete_task(task_id, faculty)


@router.post("/{task_id}/submit", response_model=SubmissionRead, status_code=status.HTTP_201_CREATED)
def submit_task(
    task_id: int,
    comment: str = Form(""),
    collaborators: str = Form("[]"),
    files: Optional[list[UploadFile]] = File(None),
    me: User = Depends(require_student),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    data = _build_submission_input(comment, collaborators, files or [], lifecycle.upload_limit(task_id))
    return lifecycle.submit(task_id, me.id, data)


@router.get("/{task_id}/submissions", response_model=list[SubmissionRead])
def list_task_submissions(
    task_id: int,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.task_submissions(task_id, faculty)


@router.post("/{task_id}/grade", response_model=SubmissionRead)
def grade_task(
    task_id: int,
    payload: GradeRequest,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.grade_latest(task_id, payload.student_id, payload.grade, payload.feedback, faculty)


@router.get("/{task_id}/files/{file_id}")
def download_file(
    task_id: int,
    file_id: int,
    me: User = Depends(get_current_user),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
    storage: LocalFileStorage = Depends(get_file_storage),
):
    file = lifecycle.submission_file(task_id, file_id, me)
    try:
        path = storage.open(file.storage_ref)
    except FileNotFoundError:
        logger.error("stored file %s missing for submission file %s", file.storage_ref, file.id)
        raise HTTPException(status_code=404, detail="File not found on server")

    return FileResponse(
        path,
        media_type=file.content_type or "application/octet-stream",
        filename=file.original_name,
    )
