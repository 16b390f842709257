"""
Tests for B2C withdrawal payouts and their result callbacks.
"""

import pytest

from earnings.exceptions import ProviderUnavailable, UnknownTransaction, InvalidTransition
from earnings.ledger import LedgerStore
from earnings.payouts import WithdrawalPayoutService
from models import WebhookEvent


@pytest.fixture
def withdrawal(make_user, credit):
    user = make_user()
    credit(user, "referral", 1000)
    return LedgerStore.request_withdrawal(user.id, "referral", 600, "M-Pesa", "254712345678")


class TestDispatch:

    def test_sends_net_amount_and_marks_processing(self, withdrawal, mpesa):
        result = WithdrawalPayoutService.dispatch(withdrawal.id)

        assert result.status == "processing"
        assert result.conversation_id.startswith("AG_")
        mpesa.b2c_payment.assert_called_once_with(
            amount=550,
            phone="254712345678",
            remarks="referral earnings withdrawal",
            occasion=f"WD{withdrawal.id}",
        )

    def test_provider_failure_fails_withdrawal(self, withdrawal, mpesa):
        mpesa.b2c_payment.side_effect = ProviderUnavailable()

        with pytest.raises(ProviderUnavailable):
            WithdrawalPayoutService.dispatch(withdrawal.id)

        assert LedgerStore.list_withdrawals(withdrawal.user_id)[0].status == "failed"
        assert LedgerStore.withdrawable(withdrawal.user_id, "referral") == 1000

    def test_non_mpesa_left_pending(self, make_user, credit, mpesa):
        user = make_user()
        credit(user, "ad", 700)
        airtel = LedgerStore.request_withdrawal(user.id, "ad", 600, "Airtel Money", "254112345678")

        result = WithdrawalPayoutService.dispatch(airtel.id)

        assert result.status == "pending"
        mpesa.b2c_payment.assert_not_called()

    def test_cannot_dispatch_twice(self, withdrawal):
        WithdrawalPayoutService.dispatch(withdrawal.id)
        with pytest.raises(InvalidTransition):
            WithdrawalPayoutService.dispatch(withdrawal.id)


class TestHandleResult:

    def test_success_completes(self, withdrawal):
        dispatched = WithdrawalPayoutService.dispatch(withdrawal.id)

        assert WithdrawalPayoutService.handle_result(dispatched.conversation_id, 0, "ok") is True
        assert LedgerStore.list_withdrawals(withdrawal.user_id)[0].status == "completed"
        assert LedgerStore.withdrawable(withdrawal.user_id, "referral") == 400

    def test_failure_releases_balance(self, withdrawal):
        dispatched = WithdrawalPayoutService.dispatch(withdrawal.id)

        WithdrawalPayoutService.handle_result(dispatched.conversation_id, 2001, "The initiator information is invalid.")

        stored = LedgerStore.list_withdrawals(withdrawal.user_id)[0]
        assert stored.status == "failed"
        assert stored.failure_reason == "The initiator information is invalid."
        assert LedgerStore.withdrawable(withdrawal.user_id, "referral") == 1000

    def test_duplicate_result_ignored(self, withdrawal):
        dispatched = WithdrawalPayoutService.dispatch(withdrawal.id)
        WithdrawalPayoutService.handle_result(dispatched.conversation_id, 0)

        assert WithdrawalPayoutService.handle_result(dispatched.conversation_id, 1, "late failure") is False
        assert LedgerStore.list_withdrawals(withdrawal.user_id)[0].status == "completed"

    def test_unknown_conversation(self, app):
        with pytest.raises(UnknownTransaction):
            WithdrawalPayoutService.handle_result("AG_MISSING", 0)

    def test_process_event(self, db, withdrawal, b2c_payload):
        dispatched = WithdrawalPayoutService.dispatch(withdrawal.id)
        event = WithdrawalPayoutService.record_event(b2c_payload(dispatched.conversation_id))

        assert WithdrawalPayoutService.process_event(event.id) is True
        event = db.session.get(WebhookEvent, event.id)
        assert event.status == "success"
        assert event.event_type == "b2c_result"
