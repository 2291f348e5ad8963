"""
Access to internal account records.

Accounts belong to the account system; reconciliation only reads them and
writes tier and subscription fields through versioned transaction entries.
"""

import logging
import os
from collections import Counter
from datetime import datetime
from typing import Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.dynamo import (
    build_update_expression,
    is_conditional_check_failure,
    scan_all,
    to_attribute_values,
)

from .identity import email_lookup_keys
from .models import Account, utc_now

logger = logging.getLogger(__name__)

ACCOUNTS_TABLE = os.environ.get("ACCOUNTS_TABLE", "tiersync-accounts")

# Fields reconciliation is allowed to write
WRITABLE_FIELDS = (
    "tier",
    "processor_customer_id",
    "processor_subscription_id",
    "subscription_status",
    "subscription_end_date",
    "last_payment_at",
    "last_reconciled_at",
)


def _version_condition(account: Account) -> str:
    # Accounts created outside reconciliation may not carry a version yet
    if account.version == 0:
        return "attribute_exists(pk) AND (attribute_not_exists(#version) OR #version = :expected)"
    return "#version = :expected"


class AccountDirectory:
    def __init__(self, table_name: Optional[str] = None, table=None):
        self.table_name = table_name or ACCOUNTS_TABLE
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(self.table_name)
        return self._table

    def get(self, account_id: str) -> Optional[Account]:
        response = self.table.get_item(
            Key={"pk": account_id, "sk": "ACCOUNT"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return Account.from_item(item) if item else None

    def _find_via_index(self, index_name: str, key_name: str, value: str) -> Optional[Account]:
        response = self.table.query(
            IndexName=index_name,
            KeyConditionExpression=Key(key_name).eq(value),
            ProjectionExpression="pk",
        )
        items = response.get("Items", [])
        if not items:
            return None
        if len(items) > 1:
            logger.warning(
                f"{len(items)} accounts share {key_name}={value}, using the first",
                extra={"index": index_name, "matches": len(items)},
            )
        # GSIs are eventually consistent; re-read the base item before writing
        return self.get(items[0]["pk"])

    def find_by_processor_customer_id(self, customer_id: str) -> Optional[Account]:
        if not customer_id:
            return None
        return self._find_via_index("processor-customer-index", "processor_customer_id", customer_id)

    def find_by_email(self, email: str) -> Optional[Account]:
        if not email:
            return None
        for key in email_lookup_keys(email):
            account = self._find_via_index("email-index", "email", key)
            if account:
                return account
        return None

    def build_update(self, account: Account, changes: dict, now: Optional[datetime] = None) -> dict:
        """
        TransactWriteItems entry applying ``changes`` if the account is unchanged
        since it was read.

        None values remove the attribute, except processor_customer_id which is
        never cleared.
        """
        unknown = set(changes) - set(WRITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields not writable by reconciliation: {sorted(unknown)}")

        now = now or utc_now()
        set_fields = {k: v for k, v in changes.items() if v is not None}
        remove_fields = [
            k for k, v in changes.items() if v is None and k != "processor_customer_id"
        ]
        if "tier" in set_fields and set_fields["tier"] != account.tier:
            set_fields["tier_updated_at"] = now.isoformat()

        expression, names, values = build_update_expression(
            set_fields, remove_fields, increments={"version": 1}
        )
        names["#version"] = "version"
        values[":expected"] = account.version

        return {
            "Update": {
                "TableName": self.table_name,
                "Key": to_attribute_values({"pk": account.account_id, "sk": "ACCOUNT"}),
                "UpdateExpression": expression,
                "ConditionExpression": _version_condition(account),
                "ExpressionAttributeNames": names,
                "ExpressionAttributeValues": to_attribute_values(values),
            }
        }

    def build_version_check(self, account: Account) -> dict:
        """TransactWriteItems entry asserting the account is unchanged, without writing it."""
        return {
            "ConditionCheck": {
                "TableName": self.table_name,
                "Key": to_attribute_values({"pk": account.account_id, "sk": "ACCOUNT"}),
                "ConditionExpression": _version_condition(account),
                "ExpressionAttributeNames": {"#version": "version"},
                "ExpressionAttributeValues": to_attribute_values({":expected": account.version}),
            }
        }

    def link_customer(self, account_id: str, customer_id: str) -> bool:
        """
        Attach a processor customer id to an account that has none.

        Returns:
            False if the account already carries a customer id or does not exist
        """
        try:
            self.table.update_item(
                Key={"pk": account_id, "sk": "ACCOUNT"},
                UpdateExpression=(
                    "SET processor_customer_id = :cid, "
                    "#version = if_not_exists(#version, :zero) + :one"
                ),
                ConditionExpression="attribute_exists(pk) AND attribute_not_exists(processor_customer_id)",
                ExpressionAttributeNames={"#version": "version"},
                ExpressionAttributeValues={":cid": customer_id, ":zero": 0, ":one": 1},
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise

        logger.info(
            f"Linked account {account_id} to processor customer {customer_id}",
            extra={"account_id": account_id, "customer_id": customer_id},
        )
        return True

    def count_by_tier(self) -> dict[str, int]:
        items = scan_all(
            self.table,
            ProjectionExpression="#tier",
            ExpressionAttributeNames={"#tier": "tier"},
        )
        return dict(Counter(item.get("tier", "unknown") for item in items))
