"""
Pending Update Sweep - Scheduled Lambda (daily at 3:00 AM UTC)

Deletes pending updates that are both processed and past expiry. Purely
storage hygiene: expired rows are already invisible to reconciliation reads.
"""

import logging

from botocore.exceptions import ClientError

from shared.metrics import emit_metric

from reconciliation.pending_updates import PendingUpdateStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """Lambda handler for the daily pending update sweep."""
    store = PendingUpdateStore()

    try:
        deleted = store.sweep_expired()
    except ClientError as e:
        logger.error(f"Error in pending update sweep: {e}")
        return {"deleted": 0, "error": str(e)}

    emit_metric("PendingUpdatesSwept", value=deleted)
    logger.info(f"Pending update sweep complete: deleted={deleted}")

    return {"deleted": deleted}
