"""
Error taxonomy shared by the auth gate, the order lifecycle and the HTTP layer.

Every error carries a machine-readable ``kind`` and a human-readable message;
``main.py`` renders them as ``{"detail": message, "error": kind}``.
"""


class CafeteriaError(Exception):
    kind = "error"
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"detail": self.message, "error": self.kind}


class Unauthorized(CafeteriaError):
    kind = "unauthorized"
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(CafeteriaError):
    kind = "forbidden"
    status_code = 403
    default_message = "Access denied"


class NotFound(CafeteriaError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class ValidationFailed(CafeteriaError):
    kind = "validation_failed"
    status_code = 400
    default_message = "Validation failed"


class InvalidTransition(CafeteriaError):
    kind = "invalid_transition"
    status_code = 400
    default_message = "Invalid status transition"


class InvalidState(CafeteriaError):
    kind = "invalid_state"
    status_code = 400
    default_message = "Order is not in a state that allows this operation"


class AlreadyReviewed(CafeteriaError):
    kind = "already_reviewed"
    status_code = 400
    default_message = "Order already reviewed"


class Conflict(CafeteriaError):
    kind = "conflict"
    status_code = 409
    default_message = "Order was modified concurrently, reload and retry"


class RateLimited(CafeteriaError):
    kind = "rate_limited"
    status_code = 429
    default_message = "Rate limit exceeded"

    def __init__(self, retry_after: int, message=None):
        self.retry_after = retry_after
        super().__init__(message or f"Rate limit exceeded. Try again in {retry_after} seconds.")
