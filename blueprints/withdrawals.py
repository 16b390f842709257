#======================================================================================================
#
#   WITHDRAWALS
#
#===========================================================================================================
import logging
from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from earnings.exceptions import ProviderUnavailable, ValidationError
from earnings.ledger import LedgerStore
from earnings.payouts import WithdrawalPayoutService


bp = Blueprint("withdrawals", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)


@bp.route("/withdrawals", methods=["POST"])
@login_required
def request_withdrawal():
    """
    Reserve the amount, then try to pay it out. A payout failure fails the
    withdrawal and frees the balance again, so the client can simply retry.
    """
    data = request.get_json(silent=True)
    if not data:
        raise ValidationError("Invalid or missing JSON body")

    withdrawal = LedgerStore.request_withdrawal(
        current_user.id,
        data.get("source"),
        data.get("amount"),
        data.get("paymentMethod"),
        data.get("phoneNumber") or current_user.withdrawal_phone,
    )

    try:
        withdrawal = WithdrawalPayoutService.dispatch(withdrawal.id)
    except ProviderUnavailable:
        logger.warning(f"Payout for withdrawal {withdrawal.id} failed at the provider")
        raise

    return jsonify({
        "success": True,
        "withdrawal": withdrawal.to_dict(),
        "balances": LedgerStore.get_balances(current_user.id),
    }), 201


@bp.route("/withdrawals", methods=["GET"])
@login_required
def list_withdrawals():
    return jsonify([w.to_dict() for w in LedgerStore.list_withdrawals(current_user.id)]), 200
