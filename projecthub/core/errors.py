"""Domain errors raised by the lifecycle layer and their HTTP mapping."""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class LifecycleError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LifecycleError):
    """Malformed or out-of-range input."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(LifecycleError):
    """The actor lacks permission for the action."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND


class StateError(LifecycleError):
    """The action is illegal in the entity's current state."""

    status_code = status.HTTP_409_CONFLICT


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
