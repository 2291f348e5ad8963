"""
Billing Admin - internal Lambda for support and operations.

Invoked directly or through an IAM-protected API route with a JSON body:

    {"action": "list_pending"}
    {"action": "get_customer", "customer_id": "cus_123"}
    {"action": "resync"}
    {"action": "relink_email", "customer_id": "cus_123", "email": "a@example.com"}
    {"action": "apply_pending_update", "update_id": "pu_evt_1", "email": "a@example.com"}
    {"action": "manual_override", "account_id": "acct_1", "tier": "admin",
     "admin_user_id": "ops_1", "notes": "support escalation"}
    {"action": "analytics", "days": 30}
    {"action": "history", "account_id": "acct_1", "limit": 50}
    {"action": "failed_payments", "days": 7}
    {"action": "recent_upgrades", "days": 30}
    {"action": "subscription_active", "account_id": "acct_1"}
"""

import json
import logging
from dataclasses import asdict
from typing import Optional

from botocore.exceptions import ClientError

from shared.errors import APIError, InvalidRequestError
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


def _require(params: dict, *names: str) -> list:
    missing = [name for name in names if not params.get(name)]
    if missing:
        raise InvalidRequestError(
            f"Missing required parameters: {', '.join(missing)}",
            details={"missing": missing},
        )
    return [params[name] for name in names]


def _int_param(params: dict, name: str, default: int) -> int:
    value = params.get(name, default)
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"{name} must be an integer")
    if value <= 0:
        raise InvalidRequestError(f"{name} must be positive")
    return value


def _audit_rows(records) -> list[dict]:
    return [{**asdict(record), "change_type": record.change_type} for record in records]


def _list_pending(engine, params):
    updates = engine.list_pending_updates()
    return {"count": len(updates), "pending_updates": [asdict(u) for u in updates]}


def _get_customer(engine, params):
    (customer_id,) = _require(params, "customer_id")
    snapshot = engine.get_customer_snapshot(customer_id)
    if snapshot is None:
        raise APIError("customer_not_found", f"Customer '{customer_id}' not found", 404)
    return snapshot.to_dict()


def _resync(engine, params):
    return engine.resync_unsynced()


def _relink_email(engine, params):
    customer_id, email = _require(params, "customer_id", "email")
    return {"relinked": engine.relink_pending_email(customer_id, email)}


def _apply_pending_update(engine, params):
    update_id, email = _require(params, "update_id", "email")
    return engine.apply_specific_pending(update_id, email).to_dict()


def _manual_override(engine, params):
    account_id, tier, admin_user_id = _require(params, "account_id", "tier", "admin_user_id")
    return engine.manual_override(account_id, tier, admin_user_id, params.get("notes")).to_dict()


def _analytics(engine, params):
    return engine.subscription_analytics(_int_param(params, "days", 30))


def _history(engine, params):
    (account_id,) = _require(params, "account_id")
    records = engine.account_history(account_id, limit=_int_param(params, "limit", 50))
    return {"account_id": account_id, "history": _audit_rows(records)}


def _failed_payments(engine, params):
    records = engine.audit_log.failed_payments(_int_param(params, "days", 7))
    return {"count": len(records), "failed_payments": _audit_rows(records)}


def _recent_upgrades(engine, params):
    records = engine.audit_log.recent_upgrades(_int_param(params, "days", 30))
    return {"count": len(records), "upgrades": _audit_rows(records)}


def _subscription_active(engine, params):
    (account_id,) = _require(params, "account_id")
    return {"account_id": account_id, "active": engine.is_subscription_active(account_id)}


ACTIONS = {
    "list_pending": _list_pending,
    "get_customer": _get_customer,
    "resync": _resync,
    "relink_email": _relink_email,
    "apply_pending_update": _apply_pending_update,
    "manual_override": _manual_override,
    "analytics": _analytics,
    "history": _history,
    "failed_payments": _failed_payments,
    "recent_upgrades": _recent_upgrades,
    "subscription_active": _subscription_active,
}


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

    action = params.get("action")
    action_handler = ACTIONS.get(action)
    if action_handler is None:
        return error_response(
            400,
            "unknown_action",
            f"Unknown action '{action}'",
            details={"actions": sorted(ACTIONS)},
        )

    logger.info(f"Billing admin action: {action}", extra={"action": action})

    try:
        data = action_handler(get_engine(), params)
    except APIError as e:
        return e.to_response()
    except ClientError as e:
        logger.error(f"Storage error in billing admin action {action}: {e}")
        return error_response(500, "internal_error", "Storage error, please retry")

    return success_response(data)
