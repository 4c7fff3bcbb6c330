"""Domain error taxonomy.

Services raise these; ``main.py`` turns them into JSON responses. Every error
carries a ``kind`` (the coarse category callers branch on), a stable ``code``
and the HTTP status it maps to.
"""
from typing import Optional


class ServiceError(Exception):
    kind = "Internal"
    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code, "kind": self.kind}
        body.update(self.details)
        return body


# --- NotFound ---
class NotFound(ServiceError):
    kind = "NotFound"
    code = "NOT_FOUND"
    status_code = 404
    message = "Not found"


class SurveyNotFound(NotFound):
    code = "SURVEY_NOT_FOUND"
    message = "Survey not found"


class NoSurveysFound(NotFound):
    code = "NO_SURVEYS_FOUND"
    message = "No surveys found for this email address"


# --- Forbidden ---
class Forbidden(ServiceError):
    kind = "Forbidden"
    code = "FORBIDDEN"
    status_code = 403
    message = "Access denied"


class MissingToken(Forbidden):
    code = "MISSING_TOKEN"
    status_code = 401
    message = "Missing authentication token"


class InvalidToken(Forbidden):
    code = "INVALID_TOKEN"
    message = "Invalid access token"


class TokenRevoked(Forbidden):
    code = "TOKEN_REVOKED"
    message = "Access token has been revoked"


class InvalidMagicLink(Forbidden):
    code = "INVALID_MAGIC_LINK"
    status_code = 401
    message = "Invalid or expired magic link"


class MagicLinkExpired(InvalidMagicLink):
    code = "MAGIC_LINK_EXPIRED"
    message = "Magic link has expired"


class MagicLinkUsed(InvalidMagicLink):
    code = "MAGIC_LINK_USED"
    message = "Magic link has already been used"


class InvalidSession(Forbidden):
    code = "INVALID_SESSION"
    status_code = 401
    message = "Invalid session token"


class SessionExpired(InvalidSession):
    code = "SESSION_EXPIRED"
    message = "Session expired"


class SurveyOutOfScope(Forbidden):
    code = "FORBIDDEN"
    message = "This survey is not part of the session"


# --- Conflict ---
class Conflict(ServiceError):
    kind = "Conflict"
    code = "CONFLICT"
    status_code = 409
    message = "Conflict"


class AlreadyCompleted(Conflict):
    code = "ALREADY_COMPLETED"
    message = "Survey already completed"


class AlreadyUpgraded(Conflict):
    code = "ALREADY_UPGRADED"
    message = "Survey already has expanded access"


class SurveyNotCompleted(Conflict):
    code = "SURVEY_NOT_COMPLETED"
    message = "Survey must be completed before it can be upgraded"


# --- RateLimited ---
class RateLimited(ServiceError):
    kind = "RateLimited"
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    message = "Rate limit exceeded"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


# --- Validation ---
class ValidationFailed(ServiceError):
    kind = "Validation"
    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Invalid request"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None, fields: Optional[list] = None):
        details = {}
        if field:
            details["field"] = field
        if fields:
            details["fields"] = fields
        super().__init__(message, details)


class InvalidEmail(ValidationFailed):
    code = "INVALID_EMAIL"
    message = "Invalid email address"


class InvalidAnswers(ValidationFailed):
    code = "INVALID_ANSWERS"
    message = "Answers are missing or invalid"


class ResultsMismatch(ValidationFailed):
    code = "RESULTS_MISMATCH"
    message = "Submitted results do not match the submitted answers"


class InvalidCompanyDetails(ValidationFailed):
    code = "INVALID_COMPANY_DETAILS"
    message = "Invalid company details"


# --- Transient / delivery ---
class Transient(ServiceError):
    kind = "Transient"
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    message = "Storage temporarily unavailable, please retry"


class EmailDeliveryFailed(ServiceError):
    kind = "EmailDelivery"
    code = "EMAIL_SEND_FAILED"
    status_code = 502
    message = "Failed to send email"
