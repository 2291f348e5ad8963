"""
Reconciliation engine.

Brings account tiers in line with processor events that may arrive late,
out of order, more than once, or before the account exists.

Every account mutation is a single TransactWriteItems call pairing a
version-checked account update with the audit record (and, for pending
updates, the conditional mark-processed). A cancelled transaction is either a
duplicate event (the audit record now exists) or a lost optimistic-lock race,
which is retried from a fresh read.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb_client
from shared.constants import (
    ENTITLED_STATUSES,
    PAID_TIERS,
    REASON_MANUAL_ADMIN,
    REASON_PROCESSOR_EVENT,
    TIER_ADMIN,
    TIER_BASE,
    TIER_ORDER,
)
from shared.dynamo import is_transaction_cancelled, strip_none
from shared.errors import (
    AccountNotFoundError,
    InvalidRequestError,
    MalformedEventError,
    PendingUpdateNotFoundError,
    ReconciliationConflictError,
    ReconciliationError,
)
from shared.logging_utils import log_reconciliation
from shared.metrics import emit_reconciliation_metric
from shared.retry import RetryConfig, retry_call

from .accounts import AccountDirectory
from .audit_log import AuditLog
from .customer_directory import CustomerDirectory, snapshot_from_event
from .decisions import TIER_CHANGING_KINDS, ActionType, EventKind, classify, decide
from .identity import is_synthetic_email, normalize_email_key, synthetic_email
from .models import (
    Account,
    ApplyPendingResult,
    AuditRecord,
    CustomerSnapshot,
    Outcome,
    PendingUpdate,
    ProcessorEvent,
    ReconcileResult,
    parse_iso,
    utc_now,
)
from .pending_updates import PendingUpdateStore
from .tier_resolver import resolve_tier

logger = logging.getLogger(__name__)

RECONCILE_MAX_ATTEMPTS = int(os.environ.get("RECONCILE_MAX_ATTEMPTS", "3"))

MANUAL_NOTES_MAX_LENGTH = 500


class StaleAccountError(Exception):
    """The account changed between the read and the transactional write."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} changed during reconciliation")
        self.account_id = account_id


def _pending_metadata(pending: PendingUpdate) -> dict:
    return strip_none({
        "pending_update_id": pending.update_id,
        "source_event": pending.source_event,
        **(pending.metadata or {}),
    })


class ReconciliationEngine:
    def __init__(
        self,
        accounts: Optional[AccountDirectory] = None,
        audit_log: Optional[AuditLog] = None,
        pending_updates: Optional[PendingUpdateStore] = None,
        customers: Optional[CustomerDirectory] = None,
        client=None,
        max_attempts: int = RECONCILE_MAX_ATTEMPTS,
        resolve: Callable[[Optional[dict]], str] = resolve_tier,
    ):
        self.accounts = accounts or AccountDirectory()
        self.audit_log = audit_log or AuditLog()
        self.pending_updates = pending_updates or PendingUpdateStore()
        self.customers = customers or CustomerDirectory()
        self.resolve = resolve
        self._client = client
        self.retry_config = RetryConfig(
            max_retries=max(max_attempts, 1) - 1,
            base_delay=0.05,
            max_delay=1.0,
            retryable_exceptions=(StaleAccountError,),
        )
        self._handlers = {
            EventKind.TIER_CHANGE: self._reconcile_account_event,
            EventKind.CANCELLATION: self._reconcile_account_event,
            EventKind.PAYMENT_SUCCEEDED: self._reconcile_account_event,
            EventKind.PAYMENT_FAILED: self._reconcile_account_event,
            EventKind.CUSTOMER_CREATED: self._reconcile_customer_created,
        }

    @property
    def client(self):
        if self._client is None:
            self._client = get_dynamodb_client()
        return self._client

    # ------------------------------------------------------------------
    # Processor events
    # ------------------------------------------------------------------

    def handle_event(self, payload) -> ReconcileResult:
        """
        Reconcile one processor event.

        Args:
            payload: ProcessorEvent or its dict form

        Returns:
            ReconcileResult describing what happened

        Raises:
            MalformedEventError: payload is missing required fields
            ReconciliationConflictError: account kept changing underneath us
            ClientError: storage failure (safe to redeliver)
        """
        if isinstance(payload, ProcessorEvent):
            event = payload
        else:
            try:
                event = ProcessorEvent.from_dict(payload)
            except MalformedEventError as e:
                logger.warning(
                    f"Rejected malformed event {e.event_id or 'no-event-id'}: {e.message}",
                    extra={"event_id": e.event_id},
                )
                raise

        if self.audit_log.has_event(event.event_id):
            result = ReconcileResult(Outcome.DUPLICATE, event.event_type, event.event_id)
        else:
            kind = classify(event.event_type)
            handler = self._handlers.get(kind)
            if handler is None:
                result = ReconcileResult(Outcome.IGNORED, event.event_type, event.event_id)
            else:
                result = handler(event, kind)

        log_reconciliation(
            logger,
            event.event_type,
            event.event_id,
            result.outcome.value,
            customer_id=event.customer_id,
            account_id=result.account_id,
            previous_tier=result.previous_tier,
            new_tier=result.new_tier,
        )
        emit_reconciliation_metric(result.outcome.value, event.event_type)
        return result

    def _reconcile_account_event(self, event: ProcessorEvent, kind: EventKind) -> ReconcileResult:
        resolved_tier = self.resolve(event.subscription) if kind is EventKind.TIER_CHANGE else None

        def attempt() -> ReconcileResult:
            now = utc_now()
            account, link = self._locate_account(event)
            action = decide(kind, account, resolved_tier)

            if action.type is ActionType.STAGE:
                return self._stage(event, action.target_tier, now)
            if action.type is ActionType.DISCARD:
                logger.info(
                    f"No account for customer {event.customer_id}, discarding {event.event_type}",
                    extra={"customer_id": event.customer_id, "event_id": event.event_id},
                )
                return ReconcileResult(Outcome.DISCARDED, event.event_type, event.event_id)
            return self._commit(event, account, action, link, now)

        return self._with_retries(attempt)

    def _locate_account(self, event: ProcessorEvent) -> tuple[Optional[Account], bool]:
        """
        Find the account an event belongs to.

        Returns:
            (account, link) where link means the customer id must be attached
        """
        account = self.accounts.find_by_processor_customer_id(event.customer_id)
        if account:
            return account, False

        email = event.customer_email
        if not email or is_synthetic_email(email):
            return None, False

        account = self.accounts.find_by_email(email)
        if account is None:
            return None, False
        if account.processor_customer_id and account.processor_customer_id != event.customer_id:
            logger.warning(
                f"Account {account.account_id} matches {email} but is linked to "
                f"{account.processor_customer_id}, not {event.customer_id}",
                extra={"account_id": account.account_id, "customer_id": event.customer_id},
            )
            return None, False
        return account, True

    def _commit(self, event: ProcessorEvent, account: Account, action, link: bool,
                now: datetime) -> ReconcileResult:
        changes = {}
        if link:
            changes["processor_customer_id"] = event.customer_id

        metadata = strip_none({
            **event.metadata,
            "event_type": event.event_type,
            "price_id": event.price.get("id"),
            "product_id": event.price.get("product_id"),
        })
        status = event.subscription_status
        new_tier = account.tier
        outcome = Outcome.APPLIED

        if action.type is ActionType.APPLY:
            new_tier = action.target_tier
            changes.update(
                tier=new_tier,
                processor_subscription_id=event.subscription_id,
                subscription_status=status,
                subscription_end_date=event.end_date,
                last_reconciled_at=now.isoformat(),
            )
        elif action.type is ActionType.DOWNGRADE:
            new_tier = TIER_BASE
            status = "canceled"
            changes.update(
                tier=TIER_BASE,
                subscription_status=status,
                subscription_end_date=event.cancellation_date(now),
                last_reconciled_at=now.isoformat(),
            )
        elif action.type is ActionType.SKIP_ADMIN:
            metadata["attempted_tier"] = action.target_tier
            outcome = Outcome.SKIPPED_ADMIN
        elif action.type is ActionType.RECORD_PAYMENT:
            changes["last_payment_at"] = now.isoformat()
            status = account.subscription_status
            outcome = Outcome.RECORDED
        elif action.type is ActionType.RECORD_FAILURE:
            status = account.subscription_status
            metadata["invoice_status"] = "payment_failed"
            outcome = Outcome.RECORDED
        else:
            raise ValueError(f"Unexpected action {action.type} for {event.event_type}")

        record = AuditRecord.new(
            account.account_id,
            account.tier,
            new_tier,
            action.reason,
            now=now,
            processor_customer_id=event.customer_id,
            processor_subscription_id=event.subscription_id,
            processor_event_id=event.event_id,
            subscription_status=status,
            amount=event.amount,
            currency=event.currency,
            billing_period_start=event.period_start,
            billing_period_end=event.period_end,
            metadata=metadata,
        )

        if changes:
            account_entry = self.accounts.build_update(account, changes, now)
        else:
            account_entry = self.accounts.build_version_check(account)

        if not self._run_transaction([account_entry, self.audit_log.build_put(record)]):
            if self.audit_log.has_event(event.event_id):
                return ReconcileResult(Outcome.DUPLICATE, event.event_type, event.event_id,
                                       account_id=account.account_id)
            raise StaleAccountError(account.account_id)

        if action.type in (ActionType.APPLY, ActionType.DOWNGRADE):
            self._record_directory_subscription(event, new_tier, now)

        return ReconcileResult(
            outcome,
            event.event_type,
            event.event_id,
            account_id=account.account_id,
            previous_tier=account.tier,
            new_tier=new_tier,
        )

    def _stage(self, event: ProcessorEvent, tier: str, now: datetime) -> ReconcileResult:
        email = normalize_email_key(event.customer_email) or synthetic_email(event.customer_id)
        pending = PendingUpdate.new(
            email=email,
            pending_tier=tier,
            source_event=event.event_type,
            processor_event_id=event.event_id,
            ttl_days=self.pending_updates.ttl_days,
            now=now,
            processor_customer_id=event.customer_id,
            processor_subscription_id=event.subscription_id,
            subscription_status=event.subscription_status,
            subscription_end_date=event.end_date,
            metadata=strip_none({
                "price_id": event.price.get("id"),
                "product_id": event.price.get("product_id"),
                "checkout_session_id": event.metadata.get("checkout_session_id"),
                "amount": event.amount,
                "currency": event.currency,
            }),
        )

        # The pending update must land before any cache write is attempted
        if not self.pending_updates.stage(pending):
            return ReconcileResult(
                Outcome.DUPLICATE,
                event.event_type,
                event.event_id,
                new_tier=tier,
                pending_update_id=pending.update_id,
            )

        self._sync_directory(event.customer_id, pending, now)
        return ReconcileResult(
            Outcome.STAGED,
            event.event_type,
            event.event_id,
            new_tier=tier,
            pending_update_id=pending.update_id,
        )

    def _sync_directory(self, customer_id: str, pending: PendingUpdate, now: datetime) -> bool:
        """Fold a pending update into the customer directory. Failures are recorded, not raised."""
        try:
            if self.customers.find_by_customer_id(customer_id) is None:
                self.customers.upsert_customer(customer_id, pending.email, now=now)
            self.customers.apply_pending_update(customer_id, pending, now=now)
        except ClientError as e:
            logger.error(
                f"Failed to sync customer {customer_id} into directory: {e}",
                extra={"customer_id": customer_id, "update_id": pending.update_id},
            )
            try:
                self.customers.log_sync_error(customer_id, str(e), now=now)
            except ClientError as log_error:
                logger.error(f"Failed to record sync error for {customer_id}: {log_error}")
            return False
        return True

    def _record_directory_subscription(self, event: ProcessorEvent, tier: str, now: datetime) -> None:
        try:
            self.customers.record_subscription(
                event.customer_id, snapshot_from_event(event, tier, now), now=now
            )
        except ClientError as e:
            logger.warning(
                f"Failed to refresh directory snapshot for {event.customer_id}: {e}",
                extra={"customer_id": event.customer_id},
            )

    def _reconcile_customer_created(self, event: ProcessorEvent, kind: EventKind) -> ReconcileResult:
        now = utc_now()
        customer = event.customer or {}
        email = event.customer_email
        real_email = email if email and not is_synthetic_email(email) else None

        self.customers.upsert_customer(
            event.customer_id,
            email or synthetic_email(event.customer_id),
            metadata=customer.get("metadata"),
            created_at=customer.get("created"),
            description=customer.get("description"),
            now=now,
        )
        self.sync_customer(event.customer_id, real_email)

        account = self.accounts.find_by_email(real_email) if real_email else None
        action = decide(kind, account)

        if action.type is ActionType.LINK_CUSTOMER and self.accounts.link_customer(
            account.account_id, event.customer_id
        ):
            return ReconcileResult(
                Outcome.LINKED, event.event_type, event.event_id, account_id=account.account_id
            )
        return ReconcileResult(
            Outcome.RECORDED,
            event.event_type,
            event.event_id,
            account_id=account.account_id if account else None,
        )

    # ------------------------------------------------------------------
    # Deferred matching
    # ------------------------------------------------------------------

    def apply_pending(self, email: Optional[str], customer_id: Optional[str] = None) -> ApplyPendingResult:
        """
        Apply the newest staged update for an account that just signed up or logged in.

        Customer-id matches take precedence; email is consulted only when no
        update is filed under the account's customer id. Older candidates are
        marked superseded so they can never be applied later. With no candidate
        at all, a synced customer directory snapshot is applied instead.
        """

        def attempt() -> ApplyPendingResult:
            now = utc_now()
            account = self.accounts.find_by_email(email) if email else None
            if account is None and customer_id:
                account = self.accounts.find_by_processor_customer_id(customer_id)
            if account is None:
                return ApplyPendingResult(applied=False, reason="account_not_found")

            candidates = self._pending_candidates(account, email, customer_id, now)
            if not candidates:
                from_directory = self._apply_from_directory(account, email, customer_id, now)
                if from_directory is not None:
                    return from_directory
                return ApplyPendingResult(
                    applied=False,
                    previous_tier=account.tier,
                    new_tier=account.tier,
                    reason="no_pending_updates",
                )

            newest = candidates[0]
            result = self._consume_pending(account, newest, now)
            for older in candidates[1:]:
                self.pending_updates.mark_processed(older.update_id, now=now, superseded_by=newest.update_id)
            return result

        result = self._with_retries(attempt)
        logger.info(
            f"Apply pending for {email or customer_id}: {result.reason}",
            extra={
                "customer_id": customer_id,
                "applied": result.applied,
                "previous_tier": result.previous_tier,
                "new_tier": result.new_tier,
                "pending_update_id": result.pending_update_id,
            },
        )
        return result

    def _pending_candidates(self, account: Account, email: Optional[str],
                            customer_id: Optional[str], now: datetime) -> list[PendingUpdate]:
        customer_ids = []
        for cid in (customer_id, account.processor_customer_id):
            if cid and cid not in customer_ids:
                customer_ids.append(cid)

        candidates = []
        for cid in customer_ids:
            candidates.extend(self.pending_updates.find_pending_for_customer(cid, now=now))

        if not candidates:
            for address in (email, account.email):
                if address:
                    candidates.extend(self.pending_updates.find_pending_for_email(address, now=now))
            # An email match filed under another customer belongs to that customer
            if account.processor_customer_id:
                candidates = [
                    c for c in candidates
                    if c.processor_customer_id in (None, account.processor_customer_id)
                ]

        unique = {c.update_id: c for c in candidates}
        return sorted(unique.values(), key=lambda c: c.created_at, reverse=True)

    def _directory_snapshot(self, account: Account, email: Optional[str],
                            customer_id: Optional[str]) -> Optional[CustomerSnapshot]:
        snapshot = None
        for cid in (customer_id, account.processor_customer_id):
            if cid:
                snapshot = self.customers.find_by_customer_id(cid)
                if snapshot:
                    break
        if snapshot is None:
            for address in (email, account.email):
                if address and not is_synthetic_email(address):
                    snapshot = self.customers.find_by_email(address)
                    if snapshot:
                        break
        if snapshot is None:
            return None

        if account.processor_customer_id:
            return snapshot if snapshot.customer_id == account.processor_customer_id else None
        owner = self.accounts.find_by_processor_customer_id(snapshot.customer_id)
        if owner and owner.account_id != account.account_id:
            return None
        return snapshot

    def _apply_from_directory(self, account: Account, email: Optional[str],
                              customer_id: Optional[str], now: datetime) -> Optional[ApplyPendingResult]:
        """
        Apply the customer directory's subscription snapshot when no pending update matches.

        Only synced snapshots taken from processor data qualify. Snapshots folded
        from a pending update are applied through that update alone, so an
        expired or superseded update is never revived here.

        Returns:
            None when the snapshot is missing, outdated or already reflected
        """
        snapshot = self._directory_snapshot(account, email, customer_id)
        if snapshot is None or not snapshot.subscription_synced:
            return None

        subscription = snapshot.subscription or {}
        target_tier = subscription.get("tier")
        if subscription.get("pending_update_id"):
            return None
        if target_tier not in TIER_ORDER or target_tier == TIER_ADMIN:
            return None

        taken_at = subscription.get("last_updated") or snapshot.updated_at
        if account.last_reconciled_at and (not taken_at or taken_at <= account.last_reconciled_at):
            return None

        status = subscription.get("status")
        subscription_id = subscription.get("subscription_id")
        if (
            target_tier == account.tier
            and status in (None, account.subscription_status)
            and subscription_id in (None, account.processor_subscription_id)
        ):
            return None

        unchanged = {"previous_tier": account.tier, "new_tier": account.tier}
        action = decide(EventKind.TIER_CHANGE, account, target_tier)
        if action.type is ActionType.SKIP_ADMIN:
            return ApplyPendingResult(applied=False, reason="skipped_admin", **unchanged)

        new_tier = action.target_tier
        changes = strip_none({
            "tier": new_tier,
            "processor_subscription_id": subscription_id,
            "subscription_status": status,
            "subscription_end_date": subscription.get("end_date"),
            "last_reconciled_at": now.isoformat(),
        })
        if not account.processor_customer_id:
            changes["processor_customer_id"] = snapshot.customer_id

        amount = subscription.get("amount")
        record = AuditRecord.new(
            account.account_id,
            account.tier,
            new_tier,
            REASON_PROCESSOR_EVENT,
            now=now,
            processor_customer_id=snapshot.customer_id,
            processor_subscription_id=subscription_id,
            subscription_status=status,
            amount=int(amount) if amount is not None else None,
            currency=subscription.get("currency"),
            metadata=strip_none({
                "source": "customer_directory",
                "price_id": subscription.get("price_id"),
                "product_id": subscription.get("product_id"),
            }),
        )

        items = [self.accounts.build_update(account, changes, now), self.audit_log.build_put(record)]
        if not self._run_transaction(items):
            raise StaleAccountError(account.account_id)

        logger.info(
            f"Applied directory snapshot of {snapshot.customer_id} to account {account.account_id}",
            extra={"account_id": account.account_id, "customer_id": snapshot.customer_id},
        )
        return ApplyPendingResult(
            applied=True,
            requires_reauth=new_tier != account.tier,
            previous_tier=account.tier,
            new_tier=new_tier,
            reason="applied_from_directory",
        )

    def _consume_pending(self, account: Account, pending: PendingUpdate, now: datetime,
                         force: bool = False) -> ApplyPendingResult:
        unchanged = {
            "previous_tier": account.tier,
            "new_tier": account.tier,
            "pending_update_id": pending.update_id,
        }

        if self.audit_log.has_event(pending.processor_event_id):
            self.pending_updates.mark_processed(pending.update_id, now=now)
            return ApplyPendingResult(applied=False, reason="already_applied", **unchanged)

        # Staged before the account's last processor-driven change, so already outdated
        if (
            not force
            and account.last_reconciled_at
            and pending.created_at <= account.last_reconciled_at
        ):
            self.pending_updates.mark_processed(pending.update_id, now=now, superseded_by=account.account_id)
            return ApplyPendingResult(applied=False, reason="superseded", **unchanged)

        kind = classify(pending.source_event)
        if kind not in TIER_CHANGING_KINDS:
            kind = EventKind.TIER_CHANGE
        action = decide(kind, account, pending.pending_tier)

        changes = {}
        if pending.processor_customer_id and not account.processor_customer_id:
            changes["processor_customer_id"] = pending.processor_customer_id

        metadata = _pending_metadata(pending)
        new_tier = account.tier
        if action.type is ActionType.SKIP_ADMIN:
            metadata["attempted_tier"] = action.target_tier
        else:
            new_tier = action.target_tier
            changes.update(
                tier=new_tier,
                processor_subscription_id=pending.processor_subscription_id
                or account.processor_subscription_id,
                subscription_status=pending.subscription_status or account.subscription_status,
                subscription_end_date=pending.subscription_end_date or account.subscription_end_date,
                last_reconciled_at=now.isoformat(),
            )

        amount = pending.metadata.get("amount")
        record = AuditRecord.new(
            account.account_id,
            account.tier,
            new_tier,
            REASON_PROCESSOR_EVENT,
            now=now,
            processor_customer_id=pending.processor_customer_id or account.processor_customer_id,
            processor_subscription_id=pending.processor_subscription_id,
            processor_event_id=pending.processor_event_id,
            subscription_status=pending.subscription_status,
            amount=int(amount) if amount is not None else None,
            currency=pending.metadata.get("currency"),
            metadata=metadata,
        )

        if changes:
            account_entry = self.accounts.build_update(account, changes, now)
        else:
            account_entry = self.accounts.build_version_check(account)
        items = [
            account_entry,
            self.audit_log.build_put(record),
            self.pending_updates.build_mark_processed(pending.update_id, now),
        ]

        if not self._run_transaction(items):
            if self.audit_log.has_event(pending.processor_event_id):
                self.pending_updates.mark_processed(pending.update_id, now=now)
                return ApplyPendingResult(applied=False, reason="already_applied", **unchanged)
            current = self.pending_updates.get(pending.update_id)
            if current is None or current.is_processed or current.is_expired(now):
                return ApplyPendingResult(applied=False, reason="pending_update_consumed", **unchanged)
            raise StaleAccountError(account.account_id)

        if action.type is ActionType.SKIP_ADMIN:
            return ApplyPendingResult(applied=False, reason="skipped_admin", **unchanged)

        return ApplyPendingResult(
            applied=True,
            requires_reauth=new_tier != account.tier,
            previous_tier=account.tier,
            new_tier=new_tier,
            pending_update_id=pending.update_id,
            reason="applied",
        )

    def sync_customer(self, customer_id: str, email: Optional[str] = None) -> bool:
        """Fold the newest open pending update for a customer into the directory."""
        now = utc_now()
        candidates = self.pending_updates.find_pending_for_customer(customer_id, now=now)
        if not candidates and email:
            candidates = self.pending_updates.find_pending_for_email(email, now=now)
        if not candidates:
            return False
        return self._sync_directory(customer_id, candidates[0], now)

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def manual_override(self, account_id: str, new_tier: str, admin_user_id: str,
                        notes: Optional[str] = None) -> ReconcileResult:
        """Set an account's tier by hand. The only path that may assign admin."""
        if new_tier not in TIER_ORDER:
            raise InvalidRequestError(
                f"Unknown tier '{new_tier}'", details={"valid_tiers": list(TIER_ORDER)}
            )

        def attempt() -> ReconcileResult:
            now = utc_now()
            account = self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            record = AuditRecord.new(
                account_id,
                account.tier,
                new_tier,
                REASON_MANUAL_ADMIN,
                now=now,
                processor_customer_id=account.processor_customer_id,
                processor_subscription_id=account.processor_subscription_id,
                subscription_status=account.subscription_status,
                metadata=strip_none({
                    "admin_user_id": admin_user_id,
                    "notes": notes[:MANUAL_NOTES_MAX_LENGTH] if notes else None,
                }),
            )
            items = [
                self.accounts.build_update(account, {"tier": new_tier}, now),
                self.audit_log.build_put(record),
            ]
            if not self._run_transaction(items):
                raise StaleAccountError(account_id)

            logger.info(
                f"Manual tier override for {account_id}: {account.tier} -> {new_tier}",
                extra={"account_id": account_id, "admin_user_id": admin_user_id},
            )
            return ReconcileResult(
                Outcome.APPLIED,
                "manual_override",
                account_id=account_id,
                previous_tier=account.tier,
                new_tier=new_tier,
            )

        return self._with_retries(attempt)

    def list_pending_updates(self) -> list[PendingUpdate]:
        return self.pending_updates.list_unprocessed()

    def get_customer_snapshot(self, customer_id: str) -> Optional[CustomerSnapshot]:
        return self.customers.find_by_customer_id(customer_id)

    def relink_pending_email(self, customer_id: str, email: str) -> int:
        return self.pending_updates.relink_email(customer_id, email)

    def apply_specific_pending(self, update_id: str, email: str) -> ApplyPendingResult:
        """Apply one named pending update, even if newer changes reached the account."""

        def attempt() -> ApplyPendingResult:
            now = utc_now()
            pending = self.pending_updates.get(update_id)
            if pending is None or pending.is_processed or pending.is_expired(now):
                raise PendingUpdateNotFoundError(update_id)
            account = self.accounts.find_by_email(email)
            if account is None:
                raise AccountNotFoundError(email)
            return self._consume_pending(account, pending, now, force=True)

        return self._with_retries(attempt)

    def resync_unsynced(self) -> dict:
        """
        Re-run directory sync and apply-pending for every customer not yet synced.

        Returns:
            Counts of customers seen, synced, applied and failed
        """
        summary = {"total": 0, "synced": 0, "applied": 0, "errors": 0}

        for snapshot in self.customers.find_unsynced():
            summary["total"] += 1
            email = None if is_synthetic_email(snapshot.email) else snapshot.email
            try:
                if self.sync_customer(snapshot.customer_id, email):
                    summary["synced"] += 1

                account = self.accounts.find_by_processor_customer_id(snapshot.customer_id)
                if account is None and email:
                    account = self.accounts.find_by_email(email)
                if account is not None:
                    result = self.apply_pending(account.email, snapshot.customer_id)
                    if result.applied:
                        summary["applied"] += 1
            except (ClientError, ReconciliationError) as e:
                summary["errors"] += 1
                logger.error(
                    f"Resync failed for customer {snapshot.customer_id}: {e}",
                    extra={"customer_id": snapshot.customer_id},
                )
                self.customers.log_sync_error(snapshot.customer_id, str(e))

        logger.info(f"Resync complete: {summary}", extra=summary)
        return summary

    def subscription_analytics(self, days: int = 30) -> dict:
        now = utc_now()
        return {
            "period_days": days,
            "tier_distribution": self.accounts.count_by_tier(),
            "changes": self.audit_log.analytics(now - timedelta(days=days), now),
            "recent_upgrades": len(self.audit_log.recent_upgrades(days, now=now)),
            "failed_payments": len(self.audit_log.failed_payments(days, now=now)),
        }

    def account_history(self, account_id: str, limit: int = 50) -> list[AuditRecord]:
        return self.audit_log.history_for(account_id, limit=limit)

    def is_subscription_active(self, account_id: str) -> bool:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if account.tier not in PAID_TIERS:
            return False
        end_date = parse_iso(account.subscription_end_date)
        if end_date is None:
            return account.subscription_status in ENTITLED_STATUSES
        return end_date > utc_now()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _run_transaction(self, items: list[dict]) -> bool:
        """
        Execute a TransactWriteItems call.

        Returns:
            False if a condition cancelled the transaction
        """
        try:
            self.client.transact_write_items(TransactItems=items)
        except ClientError as e:
            if is_transaction_cancelled(e):
                return False
            raise
        return True

    def _with_retries(self, func):
        try:
            return retry_call(func, config=self.retry_config)
        except StaleAccountError as e:
            raise ReconciliationConflictError(e.account_id, self.retry_config.max_retries + 1) from e
