"""
In-memory parental-consent token store.

Tokens are supplied by the client, live for 24 hours and are lost on restart;
the client can always reissue them.
"""

import logging
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from subsync.errors import AlreadyCompleted, Expired, Invalid, NotFound
from subsync.utils.clock import to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


@dataclass
class VerificationToken:
    token: str
    parent_email: str
    child_name: str
    created_at: datetime
    expires_at: datetime
    is_verified: bool = False
    verified_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self):
        data = asdict(self)
        for key in ("created_at", "expires_at", "verified_at"):
            data[key] = to_iso(data[key])
        return data


class TokenStore:
    def __init__(self, ttl: timedelta = DEFAULT_TTL, clock: Callable[[], datetime] = utcnow):
        self._ttl = ttl
        self._clock = clock
        self._tokens: Dict[str, VerificationToken] = {}
        self._lock = threading.Lock()

    def issue(self, token: str, parent_email: str, child_name: str) -> VerificationToken:
        if not token:
            raise Invalid("Verification token is required")
        if not parent_email:
            raise Invalid("Parent email is required")

        now = self._clock()
        record = VerificationToken(
            token=token,
            parent_email=parent_email,
            child_name=child_name or "",
            created_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._tokens[token] = record
        logger.info("Verification token issued", extra={"expires_at": to_iso(record.expires_at)})
        return replace(record)

    def verify(self, token: str) -> VerificationToken:
        now = self._clock()
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                raise NotFound("Invalid or expired verification token")

            if record.is_expired(now):
                del self._tokens[token]
                logger.info("Verification token expired and evicted")
                raise Expired("Verification token has expired")

            if record.is_verified:
                raise AlreadyCompleted("This verification has already been completed")

            record.is_verified = True
            record.verified_at = now
            result = replace(record)

        logger.info("Parental consent verified", extra={"expires_at": to_iso(result.expires_at)})
        return result

    def status(self, token: str) -> VerificationToken:
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                raise NotFound("Verification token not found")
            return replace(record)

    def __len__(self):
        with self._lock:
            return len(self._tokens)
