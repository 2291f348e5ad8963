"""
Cache of processor customers and their last known subscription.

Kept whether or not an internal account exists, so unmatched customers stay
visible to admins. Never authoritative for access; only the account tier is.
"""

import logging
import os
from datetime import datetime
from typing import Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import MAX_SYNC_ERRORS
from shared.dynamo import is_conditional_check_failure, scan_all, strip_none

from .identity import normalize_email_key
from .models import CustomerSnapshot, PendingUpdate, ProcessorEvent, utc_now

logger = logging.getLogger(__name__)

CUSTOMERS_TABLE = os.environ.get("CUSTOMERS_TABLE", "tiersync-customers")


def snapshot_from_pending(pending: PendingUpdate, now: datetime) -> dict:
    metadata = pending.metadata or {}
    return strip_none({
        "subscription_id": pending.processor_subscription_id,
        "status": pending.subscription_status,
        "tier": pending.pending_tier,
        "end_date": pending.subscription_end_date,
        "price_id": metadata.get("price_id"),
        "product_id": metadata.get("product_id"),
        "amount": metadata.get("amount"),
        "currency": metadata.get("currency"),
        "pending_update_id": pending.update_id,
        "last_updated": now.isoformat(),
    })


def snapshot_from_event(event: ProcessorEvent, tier: str, now: datetime) -> dict:
    return strip_none({
        "subscription_id": event.subscription_id,
        "status": event.subscription_status,
        "tier": tier,
        "start_date": event.period_start,
        "end_date": event.end_date,
        "price_id": event.price.get("id"),
        "product_id": event.price.get("product_id"),
        "amount": event.amount,
        "currency": event.currency,
        "last_updated": now.isoformat(),
    })


class CustomerDirectory:
    def __init__(self, table_name: Optional[str] = None, table=None):
        self.table_name = table_name or CUSTOMERS_TABLE
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(self.table_name)
        return self._table

    def upsert_customer(
        self,
        customer_id: str,
        email: Optional[str],
        metadata: Optional[dict] = None,
        created_at: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Create or refresh a customer entry without touching its subscription snapshot."""
        now = now or utc_now()
        fields = strip_none({
            "email": normalize_email_key(email),
            "metadata": metadata,
            "processor_created_at": created_at,
            "description": description,
        })

        set_parts = [f"#{name} = :{name}" for name in fields]
        set_parts += [
            "updated_at = :now",
            "created_at = if_not_exists(created_at, :now)",
            "subscription_synced = if_not_exists(subscription_synced, :false)",
            "sync_errors = if_not_exists(sync_errors, :empty)",
        ]
        values = {f":{name}": value for name, value in fields.items()}
        values.update({":now": now.isoformat(), ":false": False, ":empty": []})

        kwargs = {}
        if fields:
            kwargs["ExpressionAttributeNames"] = {f"#{name}": name for name in fields}

        self.table.update_item(
            Key={"pk": customer_id, "sk": "CUSTOMER"},
            UpdateExpression="SET " + ", ".join(set_parts),
            ExpressionAttributeValues=values,
            **kwargs,
        )

    def find_by_customer_id(self, customer_id: str) -> Optional[CustomerSnapshot]:
        response = self.table.get_item(Key={"pk": customer_id, "sk": "CUSTOMER"})
        item = response.get("Item")
        return CustomerSnapshot.from_item(item) if item else None

    def find_by_email(self, email: str) -> Optional[CustomerSnapshot]:
        key = normalize_email_key(email)
        if not key:
            return None
        response = self.table.query(
            IndexName="email-index",
            KeyConditionExpression=Key("email").eq(key),
            Limit=1,
        )
        items = response.get("Items", [])
        return CustomerSnapshot.from_item(items[0]) if items else None

    def apply_pending_update(self, customer_id: str, pending: PendingUpdate,
                             now: Optional[datetime] = None) -> None:
        """Fold a pending update into the snapshot and mark it synced."""
        now = now or utc_now()
        self.table.update_item(
            Key={"pk": customer_id, "sk": "CUSTOMER"},
            UpdateExpression=(
                "SET #subscription = :subscription, subscription_synced = :true, "
                "last_sync_attempt = :now, updated_at = :now, "
                "#email = if_not_exists(#email, :email), "
                "created_at = if_not_exists(created_at, :now), "
                "sync_errors = if_not_exists(sync_errors, :empty)"
            ),
            ExpressionAttributeNames={"#subscription": "subscription", "#email": "email"},
            ExpressionAttributeValues={
                ":subscription": snapshot_from_pending(pending, now),
                ":true": True,
                ":now": now.isoformat(),
                ":email": pending.email,
                ":empty": [],
            },
        )
        logger.info(
            f"Synced pending update {pending.update_id} into customer {customer_id}",
            extra={"customer_id": customer_id, "update_id": pending.update_id},
        )

    def record_subscription(self, customer_id: str, snapshot: dict,
                            now: Optional[datetime] = None) -> bool:
        """
        Refresh the subscription snapshot of a known customer.

        Returns:
            False if the customer has no directory entry yet
        """
        now = now or utc_now()
        try:
            self.table.update_item(
                Key={"pk": customer_id, "sk": "CUSTOMER"},
                UpdateExpression="SET #subscription = :subscription, updated_at = :now",
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeNames={"#subscription": "subscription"},
                ExpressionAttributeValues={":subscription": snapshot, ":now": now.isoformat()},
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise
        return True

    def log_sync_error(self, customer_id: str, message: str,
                       now: Optional[datetime] = None) -> None:
        """Record a sync failure, keeping the most recent MAX_SYNC_ERRORS entries."""
        now = now or utc_now()
        snapshot = self.find_by_customer_id(customer_id)
        errors = snapshot.sync_errors if snapshot else []
        errors = (errors + [{"error": message, "timestamp": now.isoformat()}])[-MAX_SYNC_ERRORS:]

        self.table.update_item(
            Key={"pk": customer_id, "sk": "CUSTOMER"},
            UpdateExpression=(
                "SET sync_errors = :errors, subscription_synced = :false, "
                "last_sync_attempt = :now, updated_at = :now, "
                "created_at = if_not_exists(created_at, :now)"
            ),
            ExpressionAttributeValues={
                ":errors": errors,
                ":false": False,
                ":now": now.isoformat(),
            },
        )
        logger.warning(
            f"Sync error for customer {customer_id}: {message}",
            extra={"customer_id": customer_id},
        )

    def find_unsynced(self) -> list[CustomerSnapshot]:
        items = scan_all(self.table, FilterExpression=Attr("subscription_synced").eq(False))
        return [CustomerSnapshot.from_item(item) for item in items]
