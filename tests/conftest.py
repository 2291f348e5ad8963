"""
Shared pytest fixtures for tiersync tests.
"""

import os
import sys

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    # Keep optimistic-lock retries fast and bounded in tests
    os.environ.setdefault("RECONCILE_MAX_ATTEMPTS", "3")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    try:
        from shared.aws_clients import reset_clients
        reset_clients()
    except ImportError:
        pass


@pytest.fixture(autouse=True)
def reset_lambda_engines():
    """Drop engines cached at module level by the Lambda handlers."""
    yield
    for module_name in ("api.stripe_webhook", "api.apply_pending_hook", "admin.billing_admin"):
        module = sys.modules.get(module_name)
        if module is not None:
            module._engine = None


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    dynamodb.create_table(
        TableName="tiersync-accounts",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
            {"AttributeName": "processor_customer_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "processor-customer-index",
                "KeySchema": [{"AttributeName": "processor_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="tiersync-tier-audit",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "account_id", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "account-index",
                "KeySchema": [
                    {"AttributeName": "account_id", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="tiersync-pending-updates",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
            {"AttributeName": "processor_customer_id", "AttributeType": "S"},
            {"AttributeName": "created_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [
                    {"AttributeName": "email", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "customer-index",
                "KeySchema": [
                    {"AttributeName": "processor_customer_id", "KeyType": "HASH"},
                    {"AttributeName": "created_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="tiersync-customers",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def accounts_table(mock_dynamodb):
    return mock_dynamodb.Table("tiersync-accounts")


@pytest.fixture
def audit_table(mock_dynamodb):
    return mock_dynamodb.Table("tiersync-tier-audit")


@pytest.fixture
def pending_table(mock_dynamodb):
    return mock_dynamodb.Table("tiersync-pending-updates")


@pytest.fixture
def customers_table(mock_dynamodb):
    return mock_dynamodb.Table("tiersync-customers")


@pytest.fixture
def seed_account(accounts_table):
    """Insert an account the way the account service would create it."""

    def _seed(account_id="acct_1", email="user@example.com", tier="base", **fields):
        item = {"pk": account_id, "sk": "ACCOUNT", "email": email, "tier": tier, **fields}
        accounts_table.put_item(Item={k: v for k, v in item.items() if v is not None})
        return item

    return _seed


@pytest.fixture
def engine(mock_dynamodb):
    """Reconciliation engine wired to the mocked tables."""
    from reconciliation.engine import ReconciliationEngine

    return ReconciliationEngine()


@pytest.fixture
def subscription_event():
    """Build a subscription event payload in the engine's input shape."""

    def _build(
        event_id="evt_1",
        customer_id="cus_1",
        interval="year",
        status="active",
        event_type="customer.subscription.updated",
        subscription_id="sub_1",
        customer_email=None,
        **subscription_fields,
    ):
        payload = {
            "eventType": event_type,
            "eventId": event_id,
            "customerId": customer_id,
            "subscription": {
                "id": subscription_id,
                "status": status,
                "items": [
                    {
                        "price": {
                            "id": f"price_{interval}",
                            "productId": "prod_1",
                            "unitAmount": 12000 if interval == "year" else 1200,
                            "currency": "usd",
                            "recurring": {"interval": interval},
                        }
                    }
                ],
                **subscription_fields,
            },
        }
        if customer_email:
            payload["customerEmail"] = customer_email
        return payload

    return _build


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }
