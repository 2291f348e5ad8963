"""
DynamoDB helpers shared by the reconciliation repositories.
"""

import logging
from typing import Optional

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()


def strip_none(item: dict) -> dict:
    """Drop None values.

    GSI key attributes cannot be NULL, so optional fields are omitted
    rather than stored as NULL.
    """
    return {k: v for k, v in item.items() if v is not None}


def to_attribute_values(values: dict) -> dict:
    """Serialize plain Python values for the low-level client."""
    return {k: _serializer.serialize(v) for k, v in values.items()}


def build_update_expression(
    set_fields: dict,
    remove_fields: Optional[list] = None,
    increments: Optional[dict] = None,
) -> tuple[str, dict, dict]:
    """Build an UpdateExpression with aliased names for every attribute.

    Returns:
        (expression, attribute_names, attribute_values)
    """
    names = {}
    values = {}
    set_parts = []

    for i, (field, value) in enumerate(set_fields.items()):
        names[f"#s{i}"] = field
        values[f":s{i}"] = value
        set_parts.append(f"#s{i} = :s{i}")

    for i, (field, amount) in enumerate((increments or {}).items()):
        names[f"#i{i}"] = field
        values[f":i{i}"] = amount
        values[":zero"] = 0
        set_parts.append(f"#i{i} = if_not_exists(#i{i}, :zero) + :i{i}")

    parts = []
    if set_parts:
        parts.append("SET " + ", ".join(set_parts))

    remove_parts = []
    for i, field in enumerate(remove_fields or []):
        names[f"#r{i}"] = field
        remove_parts.append(f"#r{i}")
    if remove_parts:
        parts.append("REMOVE " + ", ".join(remove_parts))

    return " ".join(parts), names, values


def query_all(table, **kwargs) -> list[dict]:
    """Run a query and follow LastEvaluatedKey until exhausted."""
    items = []
    while True:
        response = table.query(**kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def scan_all(table, **kwargs) -> list[dict]:
    """Run a scan and follow LastEvaluatedKey until exhausted."""
    items = []
    while True:
        response = table.scan(**kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def is_conditional_check_failure(error: ClientError) -> bool:
    return error_code(error) == "ConditionalCheckFailedException"


def is_transaction_cancelled(error: ClientError) -> bool:
    return error_code(error) == "TransactionCanceledException"
