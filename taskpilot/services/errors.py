"""
Error taxonomy for work-item and account operations.

Every error carries a stable ``code`` and a human-readable message.
The HTTP layer maps each class to a status code in ``main.create_app``.
"""


class TaskPilotError(Exception):
    code = "TASKPILOT_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(TaskPilotError):
    """Malformed or missing input; the caller may resubmit corrected data."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(TaskPilotError):
    code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(TaskPilotError):
    code = "FORBIDDEN"
    status_code = 403


class ConflictError(TaskPilotError):
    """Current state does not allow the requested change; re-fetch and retry."""

    code = "CONFLICT"
    status_code = 409


class DependencyError(TaskPilotError):
    """Persistence failure. The message shown to callers stays generic."""

    code = "DEPENDENCY_ERROR"
    status_code = 500

    def __init__(self, message: str = "Storage failure") -> None:
        super().__init__(message)
