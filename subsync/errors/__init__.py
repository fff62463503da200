from subsync.errors.domain import (
    AlreadyCompleted,
    AuthenticationFailed,
    DomainError,
    Expired,
    Invalid,
    NotFound,
    UpstreamUnavailable,
)

__all__ = [
    "AlreadyCompleted",
    "AuthenticationFailed",
    "DomainError",
    "Expired",
    "Invalid",
    "NotFound",
    "UpstreamUnavailable",
]
