# subscription.py
from sqlalchemy import Index

from subsync.extensions import db
from subsync.utils.clock import to_iso, utcnow

MIRROR_ID_PREFIX = "sub_"


def mirror_id_for(stripe_subscription_id: str) -> str:
    return f"{MIRROR_ID_PREFIX}{stripe_subscription_id}"


class SubscriptionMirror(db.Model):
    """Local projection of a Stripe subscription. Stripe stays authoritative."""

    __tablename__ = "subscription_mirrors"

    id = db.Column(db.String(255), primary_key=True)
    user_id = db.Column(db.String(128), nullable=False, index=True)

    plan_type = db.Column(db.String(50), nullable=False, default="unknown")
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    status = db.Column(db.String(50), nullable=False, index=True)

    stripe_subscription_id = db.Column(db.String(255), unique=True, nullable=False)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False, nullable=False)
    is_therapy_referral = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    canceled_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        Index("idx_mirror_user_status", "user_id", "status"),
    )

    @classmethod
    def get_by_stripe_id(cls, stripe_subscription_id):
        return db.session.get(cls, mirror_id_for(stripe_subscription_id))

    @classmethod
    def active_for_user(cls, user_id, exclude_stripe_id=None):
        query = cls.query.filter_by(user_id=user_id, status="active")
        if exclude_stripe_id:
            query = query.filter(cls.stripe_subscription_id != exclude_stripe_id)
        return query.all()

    @classmethod
    def for_customer(cls, stripe_customer_id):
        return cls.query.filter_by(stripe_customer_id=stripe_customer_id).all()

    def mark_canceled(self, when=None):
        when = when or utcnow()
        self.status = "canceled"
        self.canceled_at = self.canceled_at or when
        self.updated_at = when

    def is_active(self):
        return self.status == "active"

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "planType": self.plan_type,
            "billingCycle": self.billing_cycle,
            "status": self.status,
            "stripeSubscriptionId": self.stripe_subscription_id,
            "stripeCustomerId": self.stripe_customer_id,
            "currentPeriodStart": to_iso(self.current_period_start),
            "currentPeriodEnd": to_iso(self.current_period_end),
            "cancelAtPeriodEnd": bool(self.cancel_at_period_end),
            "isTherapyReferral": bool(self.is_therapy_referral),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "canceledAt": to_iso(self.canceled_at),
        }

    def __repr__(self):
        return f"<SubscriptionMirror {self.id} user={self.user_id} status={self.status}>"
