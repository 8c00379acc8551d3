from fastapi import Depends, HTTPException, status

from projecthub.core.current_user import get_current_user
from projecthub.models.user import User


def require_faculty(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role not in ("faculty", "admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Faculty role required",
        )
    return current_user


def require_student(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != "student":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Student role required",
        )
    return current_user
