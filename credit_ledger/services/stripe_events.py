from typing import Dict, Any, List, Tuple, Optional
import logging
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta, timezone

from ..config import settings
from ..db import utcnow
from ..models import PaymentEventLog, Subscription
from .ledger import find_account_by_email, get_account
from .reconciler import AWAITING_ACCOUNT, PaymentEvent, ReconcileResult, reconcile
from ..exceptions import AccountNotFoundError

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


def _from_unix(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


class StripeEventProcessor:
    """Process Stripe webhook events with guaranteed idempotency and transactional safety."""

    def __init__(self, db: Session):
        self.db = db

    def process_event(self, event_data: Dict[str, Any]) -> Tuple[bool, str]:
        """
        Process Stripe webhook event with atomic insert-first idempotency.

        Returns:
            (success, message)
        """
        event_id = event_data.get("id")
        event_type = event_data.get("type")

        if not event_id or not event_type:
            return False, "Invalid event data - missing id or type"

        # ATOMIC INSERT-FIRST APPROACH
        try:
            event_log = PaymentEventLog(
                event_id=event_id,
                event_type=event_type,
                event_data=event_data,
                processed=False,
                processing_attempts=0,
            )
            self.db.add(event_log)
            self.db.flush()  # Force unique constraint check without commit
        except IntegrityError:
            self.db.rollback()
            event_log = self.db.query(PaymentEventLog).filter(
                PaymentEventLog.event_id == event_id
            ).first()
            if event_log.processed:
                logger.info(f"Event {event_id} already processed successfully")
                return True, "Event already processed"
            logger.info(f"Retrying failed event {event_id}")

        event_log.processing_attempts = (event_log.processing_attempts or 0) + 1
        attempts = event_log.processing_attempts
        if attempts > 1:
            backoff_seconds = min(60 * (2 ** (attempts - 2)), 3600)  # Max 1 hour
            event_log.next_retry_at = utcnow() + timedelta(seconds=backoff_seconds)
            logger.info(f"Event {event_id} retry #{attempts}, next retry at {event_log.next_retry_at}")
        self.db.commit()

        try:
            obj = event_data.get("data", {}).get("object") or {}
            result = self._dispatch(event_type, obj, event_id)

            event_log.processed = True
            event_log.processed_at = utcnow()
            event_log.error_message = None
            event_log.next_retry_at = None
            if result is not None:
                event_log.granted = result.granted
                event_log.batch_id = result.batch_id
                event_log.outcome_reason = result.reason
            self.db.commit()

            logger.info(f"Successfully processed Stripe event {event_id} ({event_type})")
            return True, "Event processed successfully"

        except Exception as e:
            self.db.rollback()
            try:
                event_log.error_message = str(e)
                if attempts >= settings.max_event_attempts:
                    event_log.dead_letter = True
                    logger.error(f"Event {event_id} marked as dead letter after {attempts} attempts")
                self.db.commit()
            except Exception as commit_error:
                logger.error(f"Failed to update error info for event {event_id}: {commit_error}")
                self.db.rollback()

            logger.error(f"Failed to process event {event_id}: {e}")

            if attempts >= settings.max_event_attempts:
                return False, f"Event processing failed after {attempts} attempts: {str(e)}"
            return False, f"Event processing failed: {str(e)}"

    def replay_event(self, event_id: str) -> Tuple[bool, str]:
        """
        Re-run a stored delivery that never completed, dead-lettered ones included.

        The stored payload goes back through process_event, so a replay of an
        event whose grant already landed reports the existing outcome.
        """
        event_log = self.db.query(PaymentEventLog).filter(
            PaymentEventLog.event_id == event_id
        ).first()
        if event_log is None:
            return False, "Event not found"
        if event_log.processed:
            return True, "Event already processed"
        if not event_log.event_data:
            return False, "Invalid event data - payload not stored"

        event_data = dict(event_log.event_data)
        if event_log.dead_letter:
            logger.warning(f"Releasing dead-lettered event {event_id} for manual replay")
        event_log.dead_letter = False
        self.db.commit()

        return self.process_event(event_data)

    def _dispatch(self, event_type: str, obj: Dict[str, Any], event_id: str) -> Optional[ReconcileResult]:
        if event_type == "checkout.session.completed":
            return self._handle_checkout_completed(obj, event_id)
        if event_type == "payment_intent.succeeded":
            return self._handle_payment_succeeded(obj, event_id)
        if event_type == "invoice.payment_succeeded":
            return self._handle_invoice_paid(obj, event_id)
        if event_type == "payment_intent.payment_failed":
            self._handle_payment_failed(obj)
            return None
        if event_type in SUBSCRIPTION_EVENTS:
            self._handle_subscription_changed(obj)
            return None
        # Mark as processed even if unhandled to avoid retries
        logger.info(f"Unhandled event type: {event_type}")
        return None

    def _handle_checkout_completed(self, session_data: Dict[str, Any], event_id: str) -> Optional[ReconcileResult]:
        """One-time checkout payments; subscription checkouts are granted by their invoice."""
        if session_data.get("mode") == "subscription":
            logger.info(f"Checkout {session_data.get('id')} started a subscription, credits follow its invoice")
            return None
        if session_data.get("payment_status") not in (None, "paid", "no_payment_required"):
            logger.info(f"Checkout {session_data.get('id')} completed unpaid ({session_data.get('payment_status')})")
            return None

        email = session_data.get("customer_email") or (session_data.get("customer_details") or {}).get("email")
        event = PaymentEvent(
            # the payment intent's own succeeded event must land on the same grant
            event_id=session_data.get("payment_intent") or session_data.get("id") or event_id,
            customer_email=email,
            amount_paid_cents=session_data.get("amount_total"),
            timestamp=_from_unix(session_data.get("created")),
        )
        return self._reconcile(event)

    def _handle_payment_succeeded(self, payment_intent_data: Dict[str, Any], event_id: str) -> ReconcileResult:
        """Payment intents paid outside checkout, or whose checkout event was lost."""
        email = payment_intent_data.get("receipt_email") or (payment_intent_data.get("metadata") or {}).get("email")
        event = PaymentEvent(
            event_id=payment_intent_data.get("id") or event_id,
            customer_email=email,
            amount_paid_cents=payment_intent_data.get("amount_received") or payment_intent_data.get("amount"),
            timestamp=_from_unix(payment_intent_data.get("created")),
        )
        return self._reconcile(event)

    def _handle_invoice_paid(self, invoice_data: Dict[str, Any], event_id: str) -> ReconcileResult:
        """Recurring subscription payments grant a fresh batch each cycle."""
        event = PaymentEvent(
            event_id=invoice_data.get("payment_intent") or invoice_data.get("id") or event_id,
            customer_email=invoice_data.get("customer_email"),
            amount_paid_cents=invoice_data.get("amount_paid"),
            timestamp=_from_unix(invoice_data.get("created")),
        )
        return self._reconcile(event)

    def _handle_payment_failed(self, payment_intent_data: Dict[str, Any]):
        """Handle failed payment."""
        payment_intent_id = payment_intent_data.get("id")
        failure_reason = (payment_intent_data.get("last_payment_error") or {}).get("message", "Unknown")

        logger.warning(f"Payment failed: {payment_intent_id}, reason: {failure_reason}")

    def _handle_subscription_changed(self, subscription_data: Dict[str, Any]):
        """Keep the subscription snapshot the expiration warning reads."""
        subscription_id = subscription_data.get("id")
        metadata = subscription_data.get("metadata") or {}

        account = None
        if metadata.get("user_id"):
            try:
                account = get_account(self.db, metadata["user_id"])
            except AccountNotFoundError:
                account = None
        if account is None and metadata.get("email"):
            account = find_account_by_email(self.db, metadata["email"])
        if account is None:
            logger.warning(f"Subscription {subscription_id} has no resolvable account, snapshot skipped")
            return

        period_end = subscription_data.get("current_period_end")
        if period_end is None:
            items = (subscription_data.get("items") or {}).get("data") or []
            period_end = items[0].get("current_period_end") if items else None

        snapshot = self.db.query(Subscription).filter(
            Subscription.provider_subscription_id == subscription_id
        ).first()
        if snapshot is None:
            snapshot = Subscription(provider_subscription_id=subscription_id, account_id=account.id)
            self.db.add(snapshot)
        snapshot.status = subscription_data.get("status") or "unknown"
        snapshot.current_period_end = _from_unix(period_end)
        self.db.commit()

        logger.info(f"Subscription {subscription_id} for account {account.id} is {snapshot.status}")

    def _reconcile(self, event: PaymentEvent) -> ReconcileResult:
        result = reconcile(self.db, event)
        if not result.granted and result.reason not in (None, AWAITING_ACCOUNT):
            logger.warning(f"Payment {event.event_id} not granted: {result.reason}")
        return result


def find_stuck_events(db: Session, older_than_minutes: Optional[int] = None, limit: int = 50) -> List[PaymentEventLog]:
    """Deliveries still unprocessed after the grace period, newest first."""
    minutes = older_than_minutes or settings.stuck_event_minutes
    cutoff = utcnow() - timedelta(minutes=minutes)
    stuck = db.query(PaymentEventLog).filter(
        PaymentEventLog.processed.is_(False),
        PaymentEventLog.created_at < cutoff,
    ).order_by(PaymentEventLog.created_at.desc()).limit(limit).all()

    for event_log in stuck:
        stuck_minutes = int((utcnow() - event_log.created_at).total_seconds() // 60)
        logger.warning(
            f"Stuck payment event {event_log.event_id} ({event_log.event_type}): "
            f"{event_log.processing_attempts} attempts, unprocessed for {stuck_minutes} min"
        )
    return stuck
