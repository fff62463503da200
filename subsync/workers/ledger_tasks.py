import logging

from subsync.registry import get_services
from subsync.workers.celery_app import celery

logger = logging.getLogger(__name__)


@celery.task(name="subsync.workers.ledger_tasks.sweep_financial_records", queue="maintenance")
def sweep_financial_records():
    """Delete financial records whose retention period has ended."""
    removed = get_services().ledger.sweep()
    logger.info("Scheduled ledger sweep finished", extra={"removed": removed})
    return {"removed": removed}
