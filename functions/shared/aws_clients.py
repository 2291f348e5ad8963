"""
Centralized AWS client factory with lazy initialization.

Reduces cold start overhead by deferring boto3 client/resource creation
until first use. All Lambdas share the same pattern.
"""

_dynamodb = None
_dynamodb_client = None
_secretsmanager = None
_cloudwatch = None


def get_dynamodb():
    """Get DynamoDB resource, creating it lazily on first use."""
    global _dynamodb
    if _dynamodb is None:
        import boto3
        _dynamodb = boto3.resource("dynamodb")
    return _dynamodb


def get_dynamodb_client():
    """Get low-level DynamoDB client (needed for transact_write_items)."""
    global _dynamodb_client
    if _dynamodb_client is None:
        import boto3
        _dynamodb_client = boto3.client("dynamodb")
    return _dynamodb_client


def get_secretsmanager():
    """Get Secrets Manager client, creating it lazily on first use."""
    global _secretsmanager
    if _secretsmanager is None:
        import boto3
        _secretsmanager = boto3.client("secretsmanager")
    return _secretsmanager


def get_cloudwatch():
    """Get CloudWatch client, creating it lazily on first use."""
    global _cloudwatch
    if _cloudwatch is None:
        import boto3
        _cloudwatch = boto3.client("cloudwatch")
    return _cloudwatch


def reset_clients():
    """Reset all cached clients. Used in tests for clean state."""
    global _dynamodb, _dynamodb_client, _secretsmanager, _cloudwatch
    _dynamodb = None
    _dynamodb_client = None
    _secretsmanager = None
    _cloudwatch = None
