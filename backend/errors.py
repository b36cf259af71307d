"""Error types raised by the domain modules and rendered as JSON by the app.

Every error carries the HTTP status it maps to, so routes stay thin: domain
code raises, ``app.handle_social_error`` turns the exception into
``{"message": ..., "details": ...}``.
"""


class SocialError(Exception):
    """Base class for errors that are surfaced directly to the caller."""

    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {"message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class BadRequest(SocialError):
    status_code = 400


class Unauthorized(SocialError):
    status_code = 401


class Forbidden(SocialError):
    status_code = 403


class NotFound(SocialError):
    status_code = 404


class Conflict(SocialError):
    status_code = 409


class PayloadTooLarge(SocialError):
    status_code = 413


class UnsupportedMediaType(SocialError):
    status_code = 415


class ValidationError(SocialError):
    """Malformed input; details maps field names to error messages."""

    status_code = 422
