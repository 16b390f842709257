#======================================================================================================
#
#   ACTIVATION PAYMENTS AND M-PESA WEBHOOKS
#
#===========================================================================================================
import logging
from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from earnings.dispatch import CallbackDispatcher
from earnings.exceptions import DuplicateActivation, ValidationError
from earnings.mpesa import parse_stk_callback, parse_b2c_result
from earnings.payouts import WithdrawalPayoutService
from earnings.reconciliation import PaymentReconciler
from extensions import db
from models import PaymentTransaction, Withdrawal


bp = Blueprint("payments", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


#=============================================================================================
#      ACTIVATION PAYMENT INITIATION
#============================================================================================
@bp.route("/user/activate", methods=["POST"])
@login_required
def activate_account():
    data = request.get_json(silent=True) or {}
    payment_method = data.get("paymentMethod", "M-Pesa")
    if payment_method != "M-Pesa":
        raise ValidationError("Only M-Pesa is supported for activation")

    amount = data.get("amount", current_app.config["ACTIVATION_FEE"])
    try:
        checkout_request_id, merchant_request_id = PaymentReconciler.initiate(
            current_user.id, amount, data.get("phoneNumber") or current_user.phone
        )
    except DuplicateActivation as e:
        return jsonify({"status": "already_activated", "message": e.user_message}), 200

    return jsonify({
        "status": "pending",
        "checkoutRequestId": checkout_request_id,
        "merchantRequestId": merchant_request_id,
        "message": "Please check your phone for the M-Pesa prompt",
    }), 202


@bp.route("/payments/<checkout_request_id>", methods=["GET"])
@login_required
def payment_status(checkout_request_id):
    payment = PaymentReconciler.get_status(current_user.id, checkout_request_id)
    return jsonify(payment.to_dict()), 200


#=======================================================================================================
#---------------------WEBHOOK CALLBACKS (PROVIDER -> US)-----------------------------------------------
#=========================================================================================================
def _callback_payload():
    """JSON body, or the raw text wrapped in a dict when it does not parse."""
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {"raw": request.get_data(as_text=True)}
    return payload


@bp.route("/mpesa/callback", methods=["POST"])
def mpesa_callback():
    """
    STK push result. The payload is stored before anything else, then the
    transaction id checked, and the settlement handed to the dispatcher so the
    provider gets an immediate ack.
    """
    payload = _callback_payload()
    event = PaymentReconciler.record_event(payload)

    try:
        parsed = parse_stk_callback(payload)
    except ValidationError as e:
        logger.warning(f"Malformed STK callback stored as event {event.id}: {e.user_message}")
        event.mark_processed(False, e.code)
        db.session.commit()
        raise

    exists = PaymentTransaction.query.filter_by(
        checkout_request_id=parsed["checkout_request_id"]
    ).first() is not None
    if not exists:
        logger.warning(f"STK callback for unknown checkout {parsed['checkout_request_id']}")
        event.mark_processed(False, "unknown_transaction")
        db.session.commit()
        return jsonify({"ResultCode": 1, "ResultDesc": "Unknown transaction"}), 404

    CallbackDispatcher.dispatch(PaymentReconciler.process_event, event.id)
    return jsonify(MPESA_ACK), 200


@bp.route("/mpesa/b2c/callback", methods=["POST"])
def mpesa_b2c_callback():
    payload = _callback_payload()
    event = WithdrawalPayoutService.record_event(payload)

    try:
        parsed = parse_b2c_result(payload)
    except ValidationError as e:
        logger.warning(f"Malformed B2C result stored as event {event.id}: {e.user_message}")
        event.mark_processed(False, e.code)
        db.session.commit()
        raise

    exists = Withdrawal.query.filter_by(conversation_id=parsed["conversation_id"]).first() is not None
    if not exists:
        logger.warning(f"B2C result for unknown conversation {parsed['conversation_id']}")
        event.mark_processed(False, "unknown_transaction")
        db.session.commit()
        return jsonify({"ResultCode": 1, "ResultDesc": "Unknown transaction"}), 404

    CallbackDispatcher.dispatch(WithdrawalPayoutService.process_event, event.id)
    return jsonify(MPESA_ACK), 200


@bp.route("/mpesa/b2c/timeout", methods=["POST"])
def mpesa_b2c_timeout():
    # The final result still arrives on the result URL; nothing to settle here
    payload = request.get_json(silent=True) or {}
    logger.warning(f"B2C queue timeout: {payload}")
    return jsonify(MPESA_ACK), 200
