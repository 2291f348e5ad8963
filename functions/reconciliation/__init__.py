# Tier reconciliation core
from .engine import ReconciliationEngine
from .models import ApplyPendingResult, Outcome, ProcessorEvent, ReconcileResult
from .tier_resolver import resolve_tier

__all__ = [
    "ReconciliationEngine",
    "ApplyPendingResult",
    "Outcome",
    "ProcessorEvent",
    "ReconcileResult",
    "resolve_tier",
]
