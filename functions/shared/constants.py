"""
Shared constants for tiersync.
"""

# Tier configuration
TIER_BASE = "base"
TIER_MID = "mid"
TIER_TOP = "top"
TIER_ADMIN = "admin"

# Tier ordering for upgrade/downgrade classification.
# "admin" sits above every paid tier but is never assigned by billing events.
TIER_ORDER = {TIER_BASE: 0, TIER_MID: 1, TIER_TOP: 2, TIER_ADMIN: 3}

PAID_TIERS = (TIER_MID, TIER_TOP)

# Recurring price interval -> tier
INTERVAL_TO_TIER = {
    "month": TIER_MID,
    "year": TIER_TOP,
}

ENTITLED_STATUSES = ("active", "trialing")

# Audit change reasons
REASON_PROCESSOR_EVENT = "processor_event"
REASON_MANUAL_ADMIN = "manual_admin"
REASON_UPGRADE = "upgrade"
REASON_DOWNGRADE = "downgrade"
REASON_CANCELLATION = "cancellation"
REASON_RENEWAL = "renewal"
REASON_PAYMENT_FAILED = "payment_failed"
REASON_TRIAL_ENDED = "trial_ended"
REASON_REFUND = "refund"

CHANGE_REASONS = (
    REASON_PROCESSOR_EVENT,
    REASON_MANUAL_ADMIN,
    REASON_UPGRADE,
    REASON_DOWNGRADE,
    REASON_CANCELLATION,
    REASON_RENEWAL,
    REASON_PAYMENT_FAILED,
    REASON_TRIAL_ENDED,
    REASON_REFUND,
)

# Processor event types
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_PAID = "invoice.paid"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_CUSTOMER_CREATED = "customer.created"

# Pending updates
PENDING_UPDATE_TTL_DAYS = 30

# Customer directory keeps this many recent sync errors
MAX_SYNC_ERRORS = 5

DEFAULT_CURRENCY = "usd"

# DynamoDB throttling error codes that should trigger retry
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
