"""
Error taxonomy for portal, chat and analytics operations.

Each error carries the HTTP status it maps to and a public message that is safe
to return to clients. Internal details stay in `details` and in the logs.
"""

from typing import Any, Dict, Optional


class PortalServiceError(Exception):
    """Base class for errors raised by the portal service core."""

    status_code = 500
    code = "INTERNAL_ERROR"
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.public_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_envelope(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        body.update(self.envelope_extras())
        return body

    def envelope_extras(self) -> Dict[str, Any]:
        return {}


class NotFoundError(PortalServiceError):
    status_code = 404
    code = "NOT_FOUND"
    public_message = "Resource not found"


class PortalNotFound(NotFoundError):
    code = "PORTAL_NOT_FOUND"
    public_message = "Portal not found"


class SessionNotFound(NotFoundError):
    code = "SESSION_NOT_FOUND"
    public_message = "Chat session not found"


class DocumentNotFound(NotFoundError):
    code = "DOCUMENT_NOT_FOUND"
    public_message = "Processed CV not found"


class ForbiddenError(PortalServiceError):
    status_code = 403
    code = "FORBIDDEN"
    public_message = "Access denied"


class UnauthorizedError(PortalServiceError):
    status_code = 401
    code = "UNAUTHENTICATED"
    public_message = "Authentication required"


class InvalidInputError(PortalServiceError):
    status_code = 400
    code = "INVALID_INPUT"
    public_message = "Invalid request"


class PortalNotReady(InvalidInputError):
    code = "PORTAL_NOT_READY"
    public_message = "Portal is not ready for chat"


class SessionPortalMismatch(InvalidInputError):
    code = "SESSION_PORTAL_MISMATCH"
    public_message = "Session does not belong to this portal"


class SessionExpired(PortalServiceError):
    status_code = 410
    code = "SESSION_EXPIRED"
    public_message = "Chat session has expired"

    def envelope_extras(self) -> Dict[str, Any]:
        return {"sessionStatus": "expired"}


class RateLimited(PortalServiceError):
    status_code = 429
    code = "RATE_LIMITED"
    public_message = "Too many messages. Please wait before sending another message."

    def __init__(self, message: Optional[str] = None, retry_after: float = 0.0, **details: Any):
        super().__init__(message, **details)
        self.retry_after = retry_after

    def envelope_extras(self) -> Dict[str, Any]:
        return {"sessionStatus": "rate_limited", "retryAfter": round(self.retry_after, 1)}


class UpstreamFailure(PortalServiceError):
    """Retrieval or generation failed. Absorbed by the chat fallback path."""

    status_code = 502
    code = "UPSTREAM_FAILURE"
    public_message = "Upstream service unavailable"


class RetrievalError(UpstreamFailure):
    code = "RETRIEVAL_ERROR"


class RetrievalUnavailable(RetrievalError):
    code = "RETRIEVAL_UNAVAILABLE"
    public_message = "No retrieval index available"


class GenerationError(UpstreamFailure):
    code = "GENERATION_ERROR"


class InternalError(PortalServiceError):
    pass


class OperationTimeout(PortalServiceError):
    status_code = 504
    code = "TIMEOUT"
    public_message = "The request took too long to complete"
