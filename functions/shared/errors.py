"""
Standardized errors for the API and the reconciliation core.
"""

import json
from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class InvalidRequestError(APIError):
    """Raised for general invalid request errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="invalid_request",
            message=message,
            status_code=400,
            details=details,
        )


class ReconciliationError(APIError):
    """Base class for errors raised by the reconciliation engine."""


class MalformedEventError(ReconciliationError):
    """Raised when an inbound processor event is missing required fields.

    Permanent: redelivering the same payload will fail the same way.
    """

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(
            code="malformed_event",
            message=message,
            status_code=400,
            details={"event_id": event_id} if event_id else None,
        )
        self.event_id = event_id


class AccountNotFoundError(ReconciliationError):
    """Raised by admin operations that target a specific account."""

    def __init__(self, account_ref: str):
        super().__init__(
            code="account_not_found",
            message=f"Account '{account_ref}' not found",
            status_code=404,
        )
        self.account_ref = account_ref


class PendingUpdateNotFoundError(ReconciliationError):
    """Raised when an admin targets a pending update that does not exist."""

    def __init__(self, update_id: str):
        super().__init__(
            code="pending_update_not_found",
            message=f"Pending update '{update_id}' not found or already processed",
            status_code=404,
        )
        self.update_id = update_id


class ReconciliationConflictError(ReconciliationError):
    """Raised when the account transaction keeps losing optimistic-lock races.

    Transient: the processor should redeliver, and event-id idempotency makes
    the redelivery safe.
    """

    def __init__(self, account_id: str, attempts: int):
        super().__init__(
            code="reconciliation_conflict",
            message=f"Account {account_id} changed concurrently {attempts} times, giving up",
            status_code=500,
        )
        self.account_id = account_id
        self.attempts = attempts
