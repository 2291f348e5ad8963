"""
Append-only ledger of tier transitions.

Records keyed by processor event id use ``event#<id>`` as their partition
key, so the conditional put enforces one record per event at the storage
layer. No retries happen here; callers own retry policy.
"""

import logging
import os
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import PAID_TIERS, REASON_PAYMENT_FAILED
from shared.dynamo import is_conditional_check_failure, scan_all, to_attribute_values

from .models import AuditRecord, utc_now

logger = logging.getLogger(__name__)

AUDIT_TABLE = os.environ.get("AUDIT_TABLE", "tiersync-tier-audit")


class AppendResult(Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"


class AuditLog:
    def __init__(self, table_name: Optional[str] = None, table=None):
        self.table_name = table_name or AUDIT_TABLE
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(self.table_name)
        return self._table

    def append(self, record: AuditRecord) -> AppendResult:
        """Insert a record, or report DUPLICATE if its event id was already recorded."""
        try:
            self.table.put_item(
                Item=record.to_item(),
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.info(
                    f"Audit record for event {record.processor_event_id} already exists",
                    extra={"event_id": record.processor_event_id, "account_id": record.account_id},
                )
                return AppendResult.DUPLICATE
            raise
        return AppendResult.STORED

    def build_put(self, record: AuditRecord) -> dict:
        """TransactWriteItems entry for ``record`` with the same uniqueness guard."""
        return {
            "Put": {
                "TableName": self.table_name,
                "Item": to_attribute_values(record.to_item()),
                "ConditionExpression": "attribute_not_exists(pk)",
            }
        }

    def has_event(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return False
        response = self.table.get_item(
            Key={"pk": f"event#{event_id}", "sk": "AUDIT"},
            ConsistentRead=True,
            ProjectionExpression="pk",
        )
        return "Item" in response

    def get_by_event(self, event_id: str) -> Optional[AuditRecord]:
        response = self.table.get_item(
            Key={"pk": f"event#{event_id}", "sk": "AUDIT"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return AuditRecord.from_item(item) if item else None

    def history_for(self, account_id: str, limit: int = 50) -> list[AuditRecord]:
        """Most recent records for an account, newest first."""
        response = self.table.query(
            IndexName="account-index",
            KeyConditionExpression=Key("account_id").eq(account_id),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [AuditRecord.from_item(item) for item in response.get("Items", [])]

    def records_between(self, start: datetime, end: datetime) -> list[AuditRecord]:
        items = scan_all(
            self.table,
            FilterExpression=Attr("created_at").between(start.isoformat(), end.isoformat()),
        )
        return [AuditRecord.from_item(item) for item in items]

    def analytics(self, start: datetime, end: datetime) -> list[dict]:
        """
        Count and sum amounts per change reason per UTC day.

        Reporting only. Scans the table, so keep windows short.

        Returns:
            Rows of {change_reason, date, count, total_amount}, newest day first
        """
        groups = defaultdict(lambda: {"count": 0, "total_amount": 0})
        for record in self.records_between(start, end):
            group = groups[(record.change_reason, record.created_at[:10])]
            group["count"] += 1
            group["total_amount"] += record.amount or 0

        rows = [
            {"change_reason": reason, "date": day, **totals}
            for (reason, day), totals in groups.items()
        ]
        rows.sort(key=lambda row: row["change_reason"])
        rows.sort(key=lambda row: row["date"], reverse=True)
        return rows

    def recent_by_reason(self, reasons: Iterable[str], days: int,
                         now: Optional[datetime] = None) -> list[AuditRecord]:
        now = now or utc_now()
        cutoff = (now - timedelta(days=days)).isoformat()
        items = scan_all(
            self.table,
            FilterExpression=Attr("change_reason").is_in(list(reasons))
            & Attr("created_at").gte(cutoff),
        )
        records = [AuditRecord.from_item(item) for item in items]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def failed_payments(self, days: int = 7, now: Optional[datetime] = None) -> list[AuditRecord]:
        return self.recent_by_reason([REASON_PAYMENT_FAILED], days, now=now)

    def recent_upgrades(self, days: int = 30, now: Optional[datetime] = None) -> list[AuditRecord]:
        """Upgrades into a paid tier, whatever the reason that caused them."""
        now = now or utc_now()
        cutoff = (now - timedelta(days=days)).isoformat()
        items = scan_all(
            self.table,
            FilterExpression=Attr("change_type").eq("upgrade")
            & Attr("new_tier").is_in(list(PAID_TIERS))
            & Attr("created_at").gte(cutoff),
        )
        records = [AuditRecord.from_item(item) for item in items]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

