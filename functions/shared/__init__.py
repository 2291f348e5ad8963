# Shared utilities package
from .constants import TIER_ORDER
from .errors import APIError, ReconciliationError
from .response_utils import error_response, success_response

__all__ = [
    "TIER_ORDER",
    "error_response",
    "success_response",
    "APIError",
    "ReconciliationError",
]
