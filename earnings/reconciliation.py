from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple
from sqlalchemy.exc import IntegrityError
from extensions import db
from logger import payments_logger as logger
from models import User, PaymentTransaction, PaymentStatus, WebhookEvent
from earnings.commission import CommissionCascade, ActivationResult
from earnings.config import LedgerConfig
from earnings.exceptions import (
    LedgerError, ValidationError, DuplicateActivation, UnknownTransaction, ProviderUnavailable,
)
from earnings.mpesa import get_mpesa_client, parse_stk_callback
from utils import normalize_phone, utcnow

STK_EVENT = "stk_callback"


@dataclass
class CallbackOutcome:
    checkout_request_id: str
    status: str
    applied: bool
    activation: Optional[ActivationResult] = None


class PaymentReconciler:
    """
    Activation payment state machine: pending -> completed | failed | cancelled.
    The checkout request id is the only key used to apply a callback's effects.
    """

    # ------------------------------------------------------
    # Initiation
    # ------------------------------------------------------
    @staticmethod
    def initiate(user_id: int, amount: int, phone: str) -> Tuple[str, str]:
        """
        Ask the provider for an STK push, then record the pending transaction.
        A provider failure raises ProviderUnavailable and writes nothing.
        """
        fee = LedgerConfig.activation_fee()
        if not isinstance(amount, int) or isinstance(amount, bool) or amount != fee:
            raise ValidationError(f"Activation fee is KSh {fee}")
        phone_number = normalize_phone(phone)
        if not phone_number:
            raise ValidationError("Phone number must be in the format 254XXXXXXXXX")

        user = db.session.get(User, user_id)
        if not user:
            raise ValidationError("User not found")
        if user.is_activated:
            raise DuplicateActivation()

        response = get_mpesa_client().stk_push(
            amount=amount,
            phone=phone_number,
            account_reference=f"TUZO{user_id}",
        )

        payment = PaymentTransaction(
            user_id=user_id,
            checkout_request_id=response["checkout_request_id"],
            merchant_request_id=response["merchant_request_id"],
            status=PaymentStatus.PENDING.value,
            amount=amount,
            phone_number=phone_number,
        )
        db.session.add(payment)
        try:
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            logger.error(f"Provider returned duplicate request ids {response}: {e}")
            raise ProviderUnavailable() from e

        logger.info(
            f"Activation payment initiated: user={user_id} checkout={payment.checkout_request_id}"
        )
        return payment.checkout_request_id, payment.merchant_request_id

    # ------------------------------------------------------
    # Callback
    # ------------------------------------------------------
    @staticmethod
    def handle_callback(checkout_request_id: str, result_code: int, result_desc: str = None,
                        receipt_number: str = None) -> CallbackOutcome:
        """
        Apply a provider result exactly once. Duplicates and retries of an
        already-terminal transaction are acknowledged without side effects, except
        a success for a transaction expired to cancelled: the customer paid, so
        it is completed and activates the account.
        """
        payment = PaymentTransaction.query.filter_by(checkout_request_id=checkout_request_id).first()
        if payment is None:
            logger.warning(f"Callback for unknown checkout request {checkout_request_id}")
            raise UnknownTransaction()

        claimable = [PaymentStatus.PENDING.value]
        if result_code == 0:
            claimable.append(PaymentStatus.CANCELLED.value)

        if payment.status not in claimable:
            logger.info(f"Duplicate callback for {checkout_request_id} ({payment.status}), acknowledged")
            return CallbackOutcome(checkout_request_id, payment.status, applied=False)

        if payment.status == PaymentStatus.CANCELLED.value:
            logger.warning(
                f"Late success callback for expired transaction {checkout_request_id} "
                f"(receipt {receipt_number}); completing it"
            )

        new_status = PaymentStatus.COMPLETED.value if result_code == 0 else PaymentStatus.FAILED.value
        values = {
            "status": new_status,
            "result_code": result_code,
            "result_desc": (result_desc or "")[:255] or None,
            "updated_at": utcnow(),
        }
        if new_status == PaymentStatus.COMPLETED.value:
            values["mpesa_receipt_number"] = receipt_number

        activation = None
        try:
            claimed = PaymentTransaction.query.filter(
                PaymentTransaction.checkout_request_id == checkout_request_id,
                PaymentTransaction.status.in_(claimable)
            ).update(values, synchronize_session=False)

            if claimed != 1:
                db.session.rollback()
                db.session.refresh(payment)
                logger.info(f"Concurrent callback already settled {checkout_request_id}")
                return CallbackOutcome(checkout_request_id, payment.status, applied=False)

            if new_status == PaymentStatus.COMPLETED.value:
                activation = CommissionCascade.activate(payment.user_id)

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            f"Callback applied: checkout={checkout_request_id} status={new_status} "
            f"code={result_code} receipt={receipt_number}"
        )
        return CallbackOutcome(checkout_request_id, new_status, applied=True, activation=activation)

    @staticmethod
    def record_event(payload) -> WebhookEvent:
        """Persist the raw STK payload before any processing."""
        reference = None
        try:
            reference = payload["Body"]["stkCallback"]["CheckoutRequestID"]
        except (KeyError, TypeError):
            pass
        event = WebhookEvent(provider="mpesa", event_type=STK_EVENT, payload=payload, reference=reference)
        db.session.add(event)
        db.session.commit()
        return event

    @staticmethod
    def process_event(event_id: int) -> Optional[CallbackOutcome]:
        """Background entry point: parse a stored STK payload and apply it."""
        event = db.session.get(WebhookEvent, event_id)
        if event is None:
            logger.error(f"Webhook event {event_id} not found")
            return None

        outcome = None
        try:
            parsed = parse_stk_callback(event.payload)
            outcome = PaymentReconciler.handle_callback(
                parsed["checkout_request_id"],
                parsed["result_code"],
                parsed["result_desc"],
                parsed["receipt_number"],
            )
            event.mark_processed(True, f"{outcome.status} (applied={outcome.applied})")
        except LedgerError as e:
            logger.warning(f"Webhook event {event_id} rejected: {e.user_message}")
            event = db.session.get(WebhookEvent, event_id)
            event.mark_processed(False, e.code)
        except Exception as e:
            logger.error(f"Webhook event {event_id} failed: {e}", exc_info=True)
            event = db.session.get(WebhookEvent, event_id)
            event.mark_processed(False, f"error: {e}")
        db.session.commit()
        return outcome

    @staticmethod
    def replay_failed_events() -> int:
        """Re-run stored STK events that did not process; safe because handling is idempotent."""
        events = WebhookEvent.query.filter(
            WebhookEvent.event_type == STK_EVENT,
            WebhookEvent.status != "success"
        ).order_by(WebhookEvent.id).all()
        for event in events:
            PaymentReconciler.process_event(event.id)
        return len(events)

    # ------------------------------------------------------
    # Maintenance & queries
    # ------------------------------------------------------
    @staticmethod
    def expire_stale(older_than_minutes: Optional[int] = None) -> int:
        """Move pending transactions that never received a callback to cancelled."""
        ttl = LedgerConfig.pending_payment_ttl()
        if older_than_minutes is not None:
            ttl = timedelta(minutes=older_than_minutes)
        cutoff = utcnow() - ttl

        try:
            expired = PaymentTransaction.query.filter(
                PaymentTransaction.status == PaymentStatus.PENDING.value,
                PaymentTransaction.created_at < cutoff
            ).update({
                "status": PaymentStatus.CANCELLED.value,
                "result_desc": "Expired without provider callback",
                "updated_at": utcnow(),
            }, synchronize_session=False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if expired:
            logger.info(f"Expired {expired} stale pending payments (cutoff {cutoff.isoformat()})")
        return expired

    @staticmethod
    def get_status(user_id: int, checkout_request_id: str) -> PaymentTransaction:
        payment = PaymentTransaction.query.filter_by(
            user_id=user_id, checkout_request_id=checkout_request_id
        ).first()
        if payment is None:
            raise UnknownTransaction()
        return payment
