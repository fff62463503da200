import uuid

from subsync.extensions import db
from subsync.utils.clock import to_iso, utcnow

REDACTED = "[REDACTED]"

# Fields cleared by anonymization; everything else on the record is immutable
PII_FIELDS = ("user_email", "user_name", "user_id", "stripe_customer_id")


class FinancialRecord(db.Model):
    """
    Compliance record written when a subscription is created.

    Financial fields never change after insert. PII fields change exactly once,
    when the owning user is anonymized.
    """

    __tablename__ = "financial_records"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_type = db.Column(db.String(50), nullable=False, default="subscription_created")

    amount = db.Column(db.BigInteger, nullable=True)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="usd")
    plan_type = db.Column(db.String(50), nullable=True)
    billing_cycle = db.Column(db.String(20), nullable=True)
    stripe_subscription_id = db.Column(db.String(255), nullable=True, index=True)
    period_start = db.Column(db.DateTime, nullable=True)
    period_end = db.Column(db.DateTime, nullable=True)

    user_id = db.Column(db.String(128), nullable=True, index=True)
    user_email = db.Column(db.String(255), nullable=True)
    user_name = db.Column(db.String(255), nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True)

    is_anonymized = db.Column(db.Boolean, default=False, nullable=False, index=True)
    anonymized_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    retain_until = db.Column(db.DateTime, nullable=False, index=True)

    def anonymize(self, when=None):
        if self.is_anonymized:
            return False
        for field in PII_FIELDS:
            setattr(self, field, REDACTED)
        self.is_anonymized = True
        self.anonymized_at = when or utcnow()
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "transactionType": self.transaction_type,
            "amount": self.amount,
            "currency": self.currency,
            "planType": self.plan_type,
            "billingCycle": self.billing_cycle,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "periodStart": to_iso(self.period_start),
            "periodEnd": to_iso(self.period_end),
            "userId": self.user_id,
            "userEmail": self.user_email,
            "userName": self.user_name,
            "stripeCustomerId": self.stripe_customer_id,
            "isAnonymized": self.is_anonymized,
            "anonymizedAt": to_iso(self.anonymized_at),
            "createdAt": to_iso(self.created_at),
            "retainUntil": to_iso(self.retain_until),
        }

    def __repr__(self):
        return f"<FinancialRecord {self.id} sub={self.stripe_subscription_id}>"
