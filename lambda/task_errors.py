from __future__ import annotations


class TaskError(Exception):
    status_code = 400
    error_code = "TASK_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.error_code)
        self.message = message or self.error_code


class ValidationError(TaskError):
    error_code = "INVALID_REQUEST"


class BatchTooLargeError(ValidationError):
    error_code = "BATCH_TOO_LARGE"


class ForbiddenError(TaskError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(TaskError):
    status_code = 404
    error_code = "TASK_NOT_FOUND"


class ConflictError(TaskError):
    error_code = "TASK_CONFLICT"


class TaskStoreError(TaskError):
    error_code = "STORE_ERROR"


class PublishError(TaskError):
    error_code = "PUBLISH_FAILED"


class EmptyObjectError(TaskError):
    error_code = "EMPTY_OBJECT"


class IdentityLookupError(TaskError):
    status_code = 401
    error_code = "IDENTITY_LOOKUP_FAILED"


class EmailNotFoundError(IdentityLookupError):
    error_code = "EMAIL_NOT_FOUND"
