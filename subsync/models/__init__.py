from subsync.models.ledger import FinancialRecord
from subsync.models.subscription import SubscriptionMirror
from subsync.models.user import User

__all__ = ["FinancialRecord", "SubscriptionMirror", "User"]
