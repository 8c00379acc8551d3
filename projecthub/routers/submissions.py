from fastapi import APIRouter, Depends

from projecthub.core.deps import get_lifecycle
from projecthub.core.permissions import require_faculty
from projecthub.models.user import User
from projecthub.schemas.submission import SubmissionRead
from projecthub.services.lifecycle import TaskLifecycleManager

router = APIRouter()


@router.post("/{submission_id}/review", response_model=SubmissionRead)
def mark_under_review(
    submission_id: int,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.mark_under_review(submission_id, faculty)


@router.post("/{submission_id}/return", response_model=SubmissionRead)
def return_submission(
    submission_id: int,
    faculty: User = Depends(require_faculty),
    lifecycle: TaskLifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.return_submission(submission_id, faculty)
