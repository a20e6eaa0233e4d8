"""Domain error taxonomy.

Services raise these; the API layer renders them as ``{"ok": false, "error": ...}``
with the carried status code. Messages are safe to show to the caller.
"""


class CRMError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, message: str = "Server error"):
        self.message = message
        super().__init__(message)


class NotFoundError(CRMError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class UnauthorizedError(CRMError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(CRMError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class InvalidTokenError(CRMError):
    status_code = 400
    code = "invalid_token"

    def __init__(self, message: str = "invalid token"):
        super().__init__(message)


class TokenExpiredError(CRMError):
    status_code = 400
    code = "expired"

    def __init__(self, message: str = "expired"):
        super().__init__(message)


class ValidationError(CRMError):
    status_code = 400
    code = "validation_error"


class ConflictError(CRMError):
    status_code = 409
    code = "conflict"


class RateLimitedError(CRMError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Too many attempts, try again later"):
        super().__init__(message)


class TableNotFoundError(CRMError):
    """An optional dependent table is missing. Callers usually degrade instead of raising."""

    status_code = 503
    code = "table_not_found"

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Table '{table}' is not available")


class UpstreamError(CRMError):
    status_code = 500
    code = "upstream_failure"


class UpdateFailedError(UpstreamError):
    """A write failed after the result was computed; ``result`` keeps the unsaved value."""

    code = "update_failed"

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)
