from flask import Blueprint, jsonify, request, current_app
from flask_login import login_user, logout_user, login_required, current_user
from earnings.referral_graph import ReferralGraph
import logging


logger = logging.getLogger(__name__)
#==================================================================================================================

bp = Blueprint("auth", __name__, url_prefix="/api")


#===========================================================================
#      REGISTRATION
#==============================================================================
@bp.route("/register", methods=["POST"])
def register():
    """
    Create a new user, attach them to their referrer (if a code was given)
    and start a session.
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Invalid or missing JSON body"}), 400

    user = ReferralGraph.register_user(
        username=data.get("username", ""),
        full_name=data.get("fullName", ""),
        phone=data.get("phone"),
        password=data.get("password", ""),
        referral_code=data.get("referralCode") or request.args.get("ref"),
    )
    login_user(user)
    logger.info(f"User {user.id} registered and logged in")

    return jsonify(user.to_dict(current_app.config.get("APP_BASE_URL"))), 201


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"message": "Logged out"}), 200


@bp.route("/user", methods=["GET"])
@login_required
def get_user():
    return jsonify(current_user.to_dict(current_app.config.get("APP_BASE_URL"))), 200
