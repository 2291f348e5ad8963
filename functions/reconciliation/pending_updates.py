"""
Staging area for tier changes that arrived before a matching account existed.

Rows are keyed ``pu_<event_id>`` so redelivered events stage at most once.
Expiry is checked at read time; nothing here depends on the sweep having run.
"""

import logging
import os
from datetime import datetime
from typing import Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import PENDING_UPDATE_TTL_DAYS
from shared.dynamo import is_conditional_check_failure, query_all, scan_all, to_attribute_values

from .identity import email_lookup_keys, normalize_email_key
from .models import PendingUpdate, utc_now

logger = logging.getLogger(__name__)

PENDING_UPDATES_TABLE = os.environ.get("PENDING_UPDATES_TABLE", "tiersync-pending-updates")
TTL_DAYS = int(os.environ.get("PENDING_UPDATE_TTL_DAYS", str(PENDING_UPDATE_TTL_DAYS)))


def _newest_first(updates: list[PendingUpdate]) -> list[PendingUpdate]:
    unique = {update.update_id: update for update in updates}
    return sorted(unique.values(), key=lambda u: u.created_at, reverse=True)


class PendingUpdateStore:
    def __init__(self, table_name: Optional[str] = None, table=None, ttl_days: int = TTL_DAYS):
        self.table_name = table_name or PENDING_UPDATES_TABLE
        self.ttl_days = ttl_days
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(self.table_name)
        return self._table

    def stage(self, pending: PendingUpdate) -> bool:
        """
        Persist a pending update.

        Returns:
            True if stored, False if a row for the same event already exists
        """
        try:
            self.table.put_item(
                Item=pending.to_item(),
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.info(
                    f"Pending update {pending.update_id} already staged",
                    extra={"update_id": pending.update_id, "event_id": pending.processor_event_id},
                )
                return False
            raise

        logger.info(
            f"Staged pending update {pending.update_id} ({pending.pending_tier}) for {pending.email}",
            extra={
                "update_id": pending.update_id,
                "customer_id": pending.processor_customer_id,
                "pending_tier": pending.pending_tier,
            },
        )
        return True

    def get(self, update_id: str) -> Optional[PendingUpdate]:
        response = self.table.get_item(
            Key={"pk": update_id, "sk": "PENDING"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return PendingUpdate.from_item(item) if item else None

    def _query_open(self, index_name: str, key_name: str, value: str, now: datetime) -> list:
        items = query_all(
            self.table,
            IndexName=index_name,
            KeyConditionExpression=Key(key_name).eq(value),
            FilterExpression=Attr("is_processed").eq(False) & Attr("expires_at").gt(now.isoformat()),
            ScanIndexForward=False,
        )
        return [PendingUpdate.from_item(item) for item in items]

    def find_pending_for_email(self, email: str, now: Optional[datetime] = None) -> list[PendingUpdate]:
        """Unprocessed, unexpired updates filed under any key ``email`` may be stored as."""
        if not email:
            return []
        now = now or utc_now()
        updates = []
        for key in email_lookup_keys(email):
            updates.extend(self._query_open("email-index", "email", key, now))
        return _newest_first(updates)

    def find_pending_for_customer(self, customer_id: str,
                                  now: Optional[datetime] = None) -> list[PendingUpdate]:
        if not customer_id:
            return []
        now = now or utc_now()
        return _newest_first(
            self._query_open("customer-index", "processor_customer_id", customer_id, now)
        )

    def list_unprocessed(self, now: Optional[datetime] = None) -> list[PendingUpdate]:
        """Every open pending update. Admin use only: scans the table."""
        now = now or utc_now()
        items = scan_all(
            self.table,
            FilterExpression=Attr("is_processed").eq(False) & Attr("expires_at").gt(now.isoformat()),
        )
        return _newest_first([PendingUpdate.from_item(item) for item in items])

    def mark_processed(self, update_id: str, now: Optional[datetime] = None,
                       superseded_by: Optional[str] = None) -> bool:
        """
        Flag an update as consumed.

        Returns:
            True if this call consumed it, False if it was already processed
        """
        now = now or utc_now()
        update_expression = "SET is_processed = :true, processed_at = :now"
        values = {":true": True, ":false": False, ":now": now.isoformat()}
        if superseded_by:
            update_expression += ", superseded_by = :superseded_by"
            values[":superseded_by"] = superseded_by

        try:
            self.table.update_item(
                Key={"pk": update_id, "sk": "PENDING"},
                UpdateExpression=update_expression,
                ConditionExpression="attribute_exists(pk) AND is_processed = :false",
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise
        return True

    def build_mark_processed(self, update_id: str, now: datetime) -> dict:
        """TransactWriteItems entry consuming an update that is still open and unexpired."""
        return {
            "Update": {
                "TableName": self.table_name,
                "Key": to_attribute_values({"pk": update_id, "sk": "PENDING"}),
                "UpdateExpression": "SET is_processed = :true, processed_at = :now",
                "ConditionExpression": "is_processed = :false AND expires_at > :now",
                "ExpressionAttributeValues": to_attribute_values({
                    ":true": True,
                    ":false": False,
                    ":now": now.isoformat(),
                }),
            }
        }

    def relink_email(self, customer_id: str, email: str, now: Optional[datetime] = None) -> int:
        """
        Re-file a customer's open updates under a real email.

        Used when updates were staged under the synthetic placeholder and the
        customer's real email became known later.

        Returns:
            Number of updates re-filed
        """
        key = normalize_email_key(email)
        relinked = 0
        for pending in self.find_pending_for_customer(customer_id, now=now):
            if pending.email == key:
                continue
            try:
                self.table.update_item(
                    Key={"pk": pending.update_id, "sk": "PENDING"},
                    UpdateExpression="SET #email = :email",
                    ConditionExpression="is_processed = :false",
                    ExpressionAttributeNames={"#email": "email"},
                    ExpressionAttributeValues={":email": key, ":false": False},
                )
            except ClientError as e:
                if is_conditional_check_failure(e):
                    continue
                raise
            relinked += 1

        logger.info(
            f"Relinked {relinked} pending updates for {customer_id}",
            extra={"customer_id": customer_id, "relinked": relinked},
        )
        return relinked

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete rows that are both processed and past expiry.

        Unprocessed rows are kept even when expired; they are already
        invisible to normal reads and remain useful for diagnosis.

        Returns:
            Number of rows deleted
        """
        now = now or utc_now()
        items = scan_all(
            self.table,
            FilterExpression=Attr("is_processed").eq(True) & Attr("expires_at").lte(now.isoformat()),
            ProjectionExpression="pk, sk",
        )

        with self.table.batch_writer() as batch:
            for item in items:
                batch.delete_item(Key={"pk": item["pk"], "sk": item["sk"]})

        logger.info(f"Swept {len(items)} expired pending updates", extra={"deleted": len(items)})
        return len(items)
