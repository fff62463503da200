import logging

from subsync.errors import UpstreamUnavailable
from subsync.registry import get_services
from subsync.workers.celery_app import celery

logger = logging.getLogger(__name__)


@celery.task(
    bind=True,
    name="subsync.workers.subscription_sync.resync_subscriptions",
    queue="maintenance",
    max_retries=3,
)
def resync_subscriptions(self, subscription_id=None):
    """Pull live Stripe state over the mirror; one subscription or all of them."""
    subscriptions = get_services().subscriptions
    try:
        if subscription_id:
            record = subscriptions.resync_subscription(subscription_id)
            return {"synced": 1 if record else 0, "failed": 0}
        return subscriptions.resync_all()
    except UpstreamUnavailable as exc:
        logger.warning("Stripe unavailable, retrying resync", extra={"error": exc.message})
        raise self.retry(exc=exc)
