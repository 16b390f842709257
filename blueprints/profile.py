from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from earnings.ledger import LedgerStore
from earnings.referral_graph import ReferralGraph
from models import TaskType


bp = Blueprint("profile", __name__, url_prefix="/api/user")


# ----------------------------------------------------------------------------------
# DASHBOARD STATS
# ----------------------------------------------------------------------------------
@bp.route("/stats", methods=["GET"])
@login_required
def get_stats():
    """Balances per source plus referral counts, as the dashboard cards show them."""
    balances = LedgerStore.get_balances(current_user.id)
    task_types = TaskType.values()

    return jsonify({
        "isActivated": current_user.is_activated,
        "accountBalance": balances["referral"]["withdrawable"],
        "totalProfit": sum(b["earned"] for b in balances.values()),
        "taskEarnings": {t: balances[t]["earned"] for t in task_types},
        "taskBalances": {t: balances[t]["withdrawable"] for t in task_types},
        "balances": balances,
        "referrals": ReferralGraph.referral_stats(current_user.id),
    }), 200


#==========================================================================
# HISTORY
#==========================================================================
@bp.route("/earnings", methods=["GET"])
@login_required
def get_earnings():
    source = request.args.get("source")
    if source:
        earnings = LedgerStore.list_earnings(current_user.id, source)
        return jsonify({
            "earnings": [e.to_dict() for e in earnings],
            "total": sum(e.amount for e in earnings),
        }), 200

    grouped = LedgerStore.earnings_by_source(current_user.id)
    return jsonify({
        "earnings": {k: [e.to_dict() for e in v] for k, v in grouped["earnings"].items()},
        "totals": grouped["totals"],
    }), 200


@bp.route("/withdrawals", methods=["GET"])
@login_required
def get_withdrawals():
    return jsonify([w.to_dict() for w in LedgerStore.list_withdrawals(current_user.id)]), 200


@bp.route("/referrals", methods=["GET"])
@login_required
def get_referrals():
    edges = ReferralGraph.list_referrals(current_user.id)
    return jsonify({
        "referrals": [e.to_dict() for e in edges],
        "stats": ReferralGraph.referral_stats(current_user.id),
    }), 200
