"""
Tests for response utilities module.

Tests cover JSON serialization and response formatting helpers.
"""

import json
from decimal import Decimal

import pytest

from shared.response_utils import decimal_default, error_response, json_response, success_response


class TestDecimalDefault:
    """Tests for decimal_default."""

    def test_integral_decimal_becomes_int(self):
        """Whole-number Decimals from DynamoDB should serialize as int."""
        assert decimal_default(Decimal("12000")) == 12000
        assert isinstance(decimal_default(Decimal("12000")), int)

    def test_fractional_decimal_becomes_float(self):
        """Fractional Decimals should serialize as float."""
        assert decimal_default(Decimal("2.5")) == 2.5

    def test_sets_become_sorted_lists(self):
        """DynamoDB string sets should serialize as sorted lists."""
        assert decimal_default({"b", "a"}) == ["a", "b"]

    def test_rejects_unknown_types(self):
        """Unsupported types should raise TypeError."""
        with pytest.raises(TypeError):
            decimal_default(object())


class TestResponses:
    """Tests for response builders."""

    def test_json_response(self):
        """Should set status, content type and serialize Decimals."""
        result = json_response(200, {"amount": Decimal("1200")}, headers={"X-Extra": "1"})

        assert result["statusCode"] == 200
        assert result["headers"] == {"Content-Type": "application/json", "X-Extra": "1"}
        assert json.loads(result["body"]) == {"amount": 1200}

    def test_error_response(self):
        """Errors should carry a code and message."""
        result = error_response(400, "missing_identity", "email or customer_id is required")

        assert result["statusCode"] == 400
        assert json.loads(result["body"]) == {
            "error": {"code": "missing_identity", "message": "email or customer_id is required"}
        }

    def test_error_response_with_details(self):
        """Details should be nested under the error."""
        result = error_response(400, "unknown_action", "Unknown action", details={"actions": ["resync"]})

        assert json.loads(result["body"])["error"]["details"] == {"actions": ["resync"]}

    def test_success_response(self):
        """Success responses default to 200."""
        result = success_response({"received": True, "outcome": "applied"})

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {"received": True, "outcome": "applied"}

    def test_success_response_custom_status(self):
        """Status code may be overridden."""
        assert success_response({}, status_code=202)["statusCode"] == 202
