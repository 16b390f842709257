"""
Tests for the activation payment state machine.
"""

from datetime import timedelta

import pytest

from earnings.exceptions import (
    ValidationError, DuplicateActivation, UnknownTransaction, ProviderUnavailable,
)
from earnings.ledger import LedgerStore
from earnings.reconciliation import PaymentReconciler
from models import Earning, PaymentTransaction, ReferralEdge, User, WebhookEvent
from utils import utcnow


class TestInitiate:

    def test_creates_pending_transaction(self, make_user, mpesa):
        user = make_user()

        checkout_id, merchant_id = PaymentReconciler.initiate(user.id, 500, "0712345678")

        payment = PaymentTransaction.query.filter_by(checkout_request_id=checkout_id).one()
        assert payment.status == "pending"
        assert payment.merchant_request_id == merchant_id
        assert payment.phone_number == "254712345678"
        mpesa.stk_push.assert_called_once_with(
            amount=500, phone="254712345678", account_reference=f"TUZO{user.id}"
        )

    def test_wrong_amount_rejected(self, make_user, mpesa):
        user = make_user()
        with pytest.raises(ValidationError):
            PaymentReconciler.initiate(user.id, 400, "0712345678")
        mpesa.stk_push.assert_not_called()

    def test_bad_phone_rejected(self, make_user):
        user = make_user()
        with pytest.raises(ValidationError):
            PaymentReconciler.initiate(user.id, 500, "555-0100")

    def test_already_activated(self, make_user, mpesa):
        user = make_user(activated=True)
        with pytest.raises(DuplicateActivation):
            PaymentReconciler.initiate(user.id, 500, "0712345678")
        mpesa.stk_push.assert_not_called()

    def test_provider_failure_writes_nothing(self, make_user, mpesa):
        user = make_user()
        mpesa.stk_push.side_effect = ProviderUnavailable()

        with pytest.raises(ProviderUnavailable):
            PaymentReconciler.initiate(user.id, 500, "0712345678")
        assert PaymentTransaction.query.count() == 0

    def test_duplicate_provider_ids_surface_as_provider_error(self, make_user, mpesa):
        user = make_user()
        mpesa.stk_push.side_effect = None
        mpesa.stk_push.return_value = {
            "checkout_request_id": "ws_CO_SAME", "merchant_request_id": "MR_SAME", "customer_message": "",
        }
        PaymentReconciler.initiate(user.id, 500, "0712345678")

        with pytest.raises(ProviderUnavailable):
            PaymentReconciler.initiate(user.id, 500, "0712345678")
        assert PaymentTransaction.query.count() == 1


class TestHandleCallback:

    def _chain(self, make_user):
        r2 = make_user()
        r1 = make_user(referrer=r2)
        user = make_user(referrer=r1)
        return r2, r1, user

    def test_success_activates_and_pays_cascade(self, db, make_user):
        r2, r1, user = self._chain(make_user)
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")

        outcome = PaymentReconciler.handle_callback(checkout_id, 0, "Success", "QGH7XYZ123")

        assert outcome.applied
        assert outcome.status == "completed"
        assert db.session.get(User, user.id).is_activated
        assert LedgerStore.withdrawable(r1.id, "referral") == 300
        assert LedgerStore.withdrawable(r2.id, "referral") == 150
        assert ReferralEdge.query.filter_by(referred_id=user.id).count() == 2

        payment = PaymentTransaction.query.filter_by(checkout_request_id=checkout_id).one()
        assert payment.status == "completed"
        assert payment.mpesa_receipt_number == "QGH7XYZ123"

    def test_duplicate_success_is_a_noop(self, make_user):
        r2, r1, user = self._chain(make_user)
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")

        PaymentReconciler.handle_callback(checkout_id, 0, "Success", "QGH7XYZ123")
        second = PaymentReconciler.handle_callback(checkout_id, 0, "Success", "QGH7XYZ123")

        assert not second.applied
        assert second.status == "completed"
        assert Earning.query.filter_by(user_id=r1.id).count() == 1
        assert Earning.query.filter_by(user_id=r2.id).count() == 1

    def test_failure_leaves_user_inactive(self, db, make_user):
        r2, r1, user = self._chain(make_user)
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")

        outcome = PaymentReconciler.handle_callback(checkout_id, 1032, "Request cancelled by user")

        assert outcome.status == "failed"
        assert not db.session.get(User, user.id).is_activated
        assert Earning.query.count() == 0

    def test_success_after_failure_is_ignored(self, db, make_user):
        _, _, user = self._chain(make_user)
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        PaymentReconciler.handle_callback(checkout_id, 1032, "Cancelled")

        outcome = PaymentReconciler.handle_callback(checkout_id, 0, "Success", "QGH7XYZ123")

        assert not outcome.applied
        assert outcome.status == "failed"
        assert not db.session.get(User, user.id).is_activated

    def test_two_payments_activate_once(self, make_user):
        r2, r1, user = self._chain(make_user)
        first, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        second, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")

        PaymentReconciler.handle_callback(first, 0, "Success", "RCPT1")
        outcome = PaymentReconciler.handle_callback(second, 0, "Success", "RCPT2")

        assert outcome.applied
        assert outcome.activation.activated is False
        assert Earning.query.filter_by(user_id=r1.id).count() == 1

    def test_unknown_checkout(self, app):
        with pytest.raises(UnknownTransaction):
            PaymentReconciler.handle_callback("ws_CO_UNKNOWN", 0)


class TestWebhookEvents:

    def test_process_event_applies_and_marks_success(self, db, make_user, stk_payload):
        user = make_user()
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        event = PaymentReconciler.record_event(stk_payload(checkout_id))

        outcome = PaymentReconciler.process_event(event.id)

        assert outcome.applied
        event = db.session.get(WebhookEvent, event.id)
        assert event.status == "success"
        assert event.reference == checkout_id

    def test_process_event_unknown_checkout_marks_failed(self, db, stk_payload):
        event = PaymentReconciler.record_event(stk_payload("ws_CO_GHOST"))

        assert PaymentReconciler.process_event(event.id) is None
        event = db.session.get(WebhookEvent, event.id)
        assert event.status == "failed"
        assert event.remarks == "unknown_transaction"

    def test_replay_failed_events(self, db, make_user, stk_payload):
        user = make_user()
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        PaymentReconciler.record_event(stk_payload(checkout_id))

        assert PaymentReconciler.replay_failed_events() == 1
        assert db.session.get(User, user.id).is_activated
        assert PaymentReconciler.replay_failed_events() == 0


class TestExpireStale:

    def test_expires_old_pending_only(self, db, make_user):
        user = make_user()
        old_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        fresh_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        old = PaymentTransaction.query.filter_by(checkout_request_id=old_id).one()
        old.created_at = utcnow() - timedelta(hours=2)
        db.session.commit()

        assert PaymentReconciler.expire_stale() == 1
        assert PaymentTransaction.query.filter_by(checkout_request_id=old_id).one().status == "cancelled"
        assert PaymentTransaction.query.filter_by(checkout_request_id=fresh_id).one().status == "pending"

    def test_late_success_completes_expired_transaction(self, db, make_user):
        r1 = make_user()
        user = make_user(referrer=r1)
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        PaymentReconciler.expire_stale(older_than_minutes=-1)

        outcome = PaymentReconciler.handle_callback(checkout_id, 0, "Success", "LATE1")

        assert outcome.applied
        assert outcome.status == "completed"
        payment = PaymentTransaction.query.filter_by(checkout_request_id=checkout_id).one()
        assert payment.mpesa_receipt_number == "LATE1"
        assert db.session.get(User, user.id).is_activated
        assert LedgerStore.withdrawable(r1.id, "referral") == 300

        again = PaymentReconciler.handle_callback(checkout_id, 0, "Success", "LATE1")
        assert not again.applied
        assert LedgerStore.withdrawable(r1.id, "referral") == 300

    def test_late_failure_leaves_expired_transaction_cancelled(self, db, make_user):
        user = make_user()
        checkout_id, _ = PaymentReconciler.initiate(user.id, 500, "0712345678")
        PaymentReconciler.expire_stale(older_than_minutes=-1)

        outcome = PaymentReconciler.handle_callback(checkout_id, 1032, "Request cancelled by user")

        assert not outcome.applied
        assert outcome.status == "cancelled"
        assert not db.session.get(User, user.id).is_activated


class TestGetStatus:

    def test_only_owner_can_read(self, make_user):
        owner = make_user()
        other = make_user()
        checkout_id, _ = PaymentReconciler.initiate(owner.id, 500, "0712345678")

        assert PaymentReconciler.get_status(owner.id, checkout_id).status == "pending"
        with pytest.raises(UnknownTransaction):
            PaymentReconciler.get_status(other.id, checkout_id)
