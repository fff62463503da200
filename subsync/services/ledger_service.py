import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from subsync.extensions import db
from subsync.models.ledger import FinancialRecord
from subsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

RETENTION_YEARS = 7

_RECORD_FIELDS = (
    "transaction_type",
    "amount",
    "currency",
    "plan_type",
    "billing_cycle",
    "stripe_subscription_id",
    "period_start",
    "period_end",
    "user_id",
    "user_email",
    "user_name",
    "stripe_customer_id",
)


def add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # Feb 29 -> Feb 28
        return value.replace(year=value.year + years, day=28)


class LedgerService:
    """Append-only financial records with anonymization and retention sweeps."""

    def __init__(self, retention_years: int = RETENTION_YEARS, clock: Callable[[], datetime] = utcnow):
        self.retention_years = retention_years
        self._clock = clock

    def create_record(self, data: Dict[str, Any]) -> Optional[FinancialRecord]:
        """Write a record. Failures are logged and reported as ``None``."""
        try:
            now = self._clock()
            fields = {k: data[k] for k in _RECORD_FIELDS if data.get(k) is not None}
            record = FinancialRecord(
                created_at=now,
                retain_until=add_years(now, self.retention_years),
                **fields,
            )
            db.session.add(record)
            db.session.commit()
            logger.info(
                "Financial record created",
                extra={"record_id": record.id, "stripe_subscription_id": record.stripe_subscription_id},
            )
            return record
        except Exception as e:
            db.session.rollback()
            logger.error(
                "Failed to create financial record",
                exc_info=True,
                extra={"stripe_subscription_id": data.get("stripe_subscription_id"), "error": str(e)},
            )
            return None

    def has_record(self, stripe_subscription_id: str, transaction_type: str = "subscription_created") -> bool:
        return db.session.query(
            FinancialRecord.query.filter_by(
                stripe_subscription_id=stripe_subscription_id,
                transaction_type=transaction_type,
            ).exists()
        ).scalar()

    def anonymize(self, user_id: str) -> int:
        """Redact PII on every non-anonymized record of ``user_id``."""
        if not user_id:
            return 0

        now = self._clock()
        records = FinancialRecord.query.filter_by(user_id=user_id, is_anonymized=False).all()
        if not records:
            logger.info("No financial records to anonymize", extra={"user_id": user_id})
            return 0

        try:
            changed = sum(1 for record in records if record.anonymize(now))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info("Financial records anonymized", extra={"user_id": user_id, "count": changed})
        return changed

    def sweep(self) -> int:
        """Delete records whose retention window has passed."""
        now = self._clock()
        try:
            removed = (
                FinancialRecord.query
                .filter(FinancialRecord.retain_until < now)
                .delete(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info("Financial record sweep finished", extra={"removed": removed})
        return removed
