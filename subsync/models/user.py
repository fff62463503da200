from subsync.extensions import db
from subsync.utils.clock import utcnow


class User(db.Model):
    """Directory entry for an app user. Only the fields billing needs."""

    __tablename__ = "users"

    id = db.Column(db.String(128), primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(255), nullable=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "displayName": self.display_name,
            "stripeCustomerId": self.stripe_customer_id,
        }

    def __repr__(self):
        return f"<User {self.id}>"
