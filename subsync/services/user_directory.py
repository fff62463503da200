import logging
from typing import Optional

from sqlalchemy import func

from subsync.errors import NotFound
from subsync.extensions import db
from subsync.models.user import User

logger = logging.getLogger(__name__)


class UserDirectory:
    """Lookups against the app's user table."""

    def find_user_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        return User.query.filter(func.lower(User.email) == email.strip().lower()).first()

    def get_user(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return db.session.get(User, user_id)

    def set_stripe_customer_id(self, user_id: str, customer_id: str) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        if user.stripe_customer_id != customer_id:
            user.stripe_customer_id = customer_id
            db.session.commit()
            logger.info("Cached Stripe customer on user", extra={"user_id": user_id, "customer_id": customer_id})
        return user
