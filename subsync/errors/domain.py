class DomainError(Exception):
    """Base class for every failure the service reports to callers."""

    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message=None, details=None):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        payload = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class AuthenticationFailed(DomainError):
    """Webhook signature missing or invalid"""

    code = "AUTHENTICATION_FAILED"
    status_code = 401


class NotFound(DomainError):
    """Requested resource was not found"""

    code = "NOT_FOUND"
    status_code = 404


class Expired(DomainError):
    """Resource has expired"""

    code = "EXPIRED"
    status_code = 410


class AlreadyCompleted(DomainError):
    """This operation has already been completed"""

    code = "ALREADY_COMPLETED"
    status_code = 409


class UpstreamUnavailable(DomainError):
    """Upstream service is unavailable"""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503


class Invalid(DomainError):
    """Request payload is malformed or incomplete"""

    code = "INVALID"
    status_code = 400
