"""
Apply Pending Hook - invoked by the account service after sign-up or login.

Applies the newest staged tier change for the account and tells the caller
whether the session must be refreshed because the tier changed.

Input (direct invocation or API body):
    {"email": "user@example.com", "customer_id": "cus_123"}
"""

import json
import logging
from typing import Optional

from botocore.exceptions import ClientError

from shared.errors import ReconciliationConflictError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, success_response

from reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_engine: Optional[ReconciliationEngine] = None


def get_engine() -> ReconciliationEngine:
    global _engine
    if _engine is None:
        _engine = ReconciliationEngine()
    return _engine


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)

    params = event
    if "body" in event:
        try:
            params = json.loads(event.get("body") or "{}")
        except json.JSONDecodeError:
            return error_response(400, "invalid_json", "Request body must be valid JSON")
        if not isinstance(params, dict):
            return error_response(400, "invalid_request", "Request body must be a JSON object")

    email = params.get("email")
    customer_id = params.get("customer_id")
    if not email and not customer_id:
        return error_response(400, "missing_identity", "email or customer_id is required")

    try:
        result = get_engine().apply_pending(email, customer_id)
    except ReconciliationConflictError as e:
        logger.error(f"Apply pending conflict for {email or customer_id}: {e}")
        return e.to_response()
    except ClientError as e:
        logger.error(f"Storage error applying pending updates for {email or customer_id}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")

    return success_response(result.to_dict())
