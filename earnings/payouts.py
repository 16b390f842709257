from typing import Optional
from extensions import db
from logger import payments_logger as logger
from models import Withdrawal, WithdrawalStatus, WebhookEvent
from earnings.exceptions import (
    LedgerError, ProviderUnavailable, UnknownTransaction, InvalidTransition,
)
from earnings.ledger import LedgerStore
from earnings.mpesa import get_mpesa_client, parse_b2c_result

B2C_EVENT = "b2c_result"
MPESA_METHOD = "M-Pesa"


class WithdrawalPayoutService:
    """Sends reserved withdrawals out through M-Pesa B2C and settles the result."""

    @staticmethod
    def dispatch(withdrawal_id: int) -> Withdrawal:
        """
        Pay out a pending M-Pesa withdrawal. On provider failure the withdrawal
        is failed, which releases its reservation, and ProviderUnavailable is raised.
        """
        withdrawal = db.session.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise UnknownTransaction("Withdrawal not found")
        if withdrawal.payment_method != MPESA_METHOD:
            logger.info(f"Withdrawal {withdrawal_id} via {withdrawal.payment_method} left pending for manual payout")
            return withdrawal
        if withdrawal.status != WithdrawalStatus.PENDING.value:
            raise InvalidTransition(f"Withdrawal {withdrawal_id} is already {withdrawal.status}")

        try:
            response = get_mpesa_client().b2c_payment(
                amount=withdrawal.net_amount,
                phone=withdrawal.phone_number,
                remarks=f"{withdrawal.source} earnings withdrawal",
                occasion=f"WD{withdrawal.id}",
            )
        except ProviderUnavailable as e:
            LedgerStore.fail_withdrawal(withdrawal_id, f"Payout request failed: {e.user_message}")
            raise

        return LedgerStore.mark_processing(withdrawal_id, response["conversation_id"])

    @staticmethod
    def handle_result(conversation_id: str, result_code: int, result_desc: str = None) -> bool:
        """Settle a B2C result. Returns False when the result was a duplicate."""
        withdrawal = Withdrawal.query.filter_by(conversation_id=conversation_id).first()
        if withdrawal is None:
            raise UnknownTransaction()

        if withdrawal.status in (WithdrawalStatus.COMPLETED.value, WithdrawalStatus.FAILED.value):
            logger.info(f"Duplicate B2C result for {conversation_id} ({withdrawal.status})")
            return False

        try:
            if result_code == 0:
                LedgerStore.complete_withdrawal(withdrawal.id)
            else:
                LedgerStore.fail_withdrawal(withdrawal.id, result_desc or f"Result code {result_code}")
        except InvalidTransition:
            logger.info(f"B2C result for {conversation_id} lost a race, already settled")
            return False
        return True

    @staticmethod
    def record_event(payload) -> WebhookEvent:
        reference = None
        try:
            reference = payload["Result"]["ConversationID"]
        except (KeyError, TypeError):
            pass
        event = WebhookEvent(provider="mpesa", event_type=B2C_EVENT, payload=payload, reference=reference)
        db.session.add(event)
        db.session.commit()
        return event

    @staticmethod
    def process_event(event_id: int) -> Optional[bool]:
        event = db.session.get(WebhookEvent, event_id)
        if event is None:
            logger.error(f"Webhook event {event_id} not found")
            return None

        applied = None
        try:
            parsed = parse_b2c_result(event.payload)
            applied = WithdrawalPayoutService.handle_result(
                parsed["conversation_id"], parsed["result_code"], parsed["result_desc"]
            )
            event = db.session.get(WebhookEvent, event_id)
            event.mark_processed(True, f"applied={applied}")
        except LedgerError as e:
            logger.warning(f"B2C event {event_id} rejected: {e.user_message}")
            event = db.session.get(WebhookEvent, event_id)
            event.mark_processed(False, e.code)
        except Exception as e:
            logger.error(f"B2C event {event_id} failed: {e}", exc_info=True)
            event = db.session.get(WebhookEvent, event_id)
            event.mark_processed(False, f"error: {e}")
        db.session.commit()
        return applied
