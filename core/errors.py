"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class MemoryEngineError(Exception):
    """Base for failures surfaced to callers with an explicit status."""

    status_code = 500
    title = "Internal Error"
    error_type = "internal_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.title)


class Unauthorized(MemoryEngineError):
    status_code = 401
    title = "Unauthorized"
    error_type = "unauthorized"


class Forbidden(MemoryEngineError):
    status_code = 403
    title = "Forbidden"
    error_type = "forbidden"


class NotFound(MemoryEngineError):
    status_code = 404
    title = "Not Found"
    error_type = "not_found"


class ContentRejected(MemoryEngineError):
    status_code = 422
    title = "Content Rejected"
    error_type = "content_rejected"


class DependencyDegraded(RuntimeError):
    """Raised when the external vector index is unavailable."""
