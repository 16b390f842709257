from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from earnings.exceptions import ValidationError
from earnings.tasks import TaskEligibilityEngine
from models import TaskType
import logging


logger = logging.getLogger(__name__)

bp = Blueprint("tasks", __name__, url_prefix="/api")


#===========================================================================
#      TASK CATALOG
#==============================================================================
@bp.route("/available-tasks", methods=["GET"])
@login_required
def available_tasks():
    task_type = request.args.get("type")
    if task_type and task_type not in TaskType.values():
        raise ValidationError(f"Unknown task type '{task_type}'")

    tasks = TaskEligibilityEngine.list_available_tasks(task_type)
    return jsonify([t.to_dict() for t in tasks]), 200


#===========================================================================
#      COMPLETION
#==============================================================================
@bp.route("/tasks/<int:task_id>/complete", methods=["POST"])
@login_required
def complete_task(task_id):
    """Record a completion; eligibility errors surface through the LedgerError handler."""
    earning_id = TaskEligibilityEngine.complete_task(current_user.id, task_id)
    return jsonify({
        "success": True,
        "earningId": earning_id,
        "status": TaskEligibilityEngine.task_status(current_user.id),
    }), 201


@bp.route("/tasks/status", methods=["GET"])
@login_required
def task_status():
    return jsonify(TaskEligibilityEngine.task_status(current_user.id)), 200


@bp.route("/tasks/completed", methods=["GET"])
@login_required
def completed_tasks():
    tasks = TaskEligibilityEngine.list_completed(current_user.id, request.args.get("type"))
    return jsonify([t.to_dict() for t in tasks]), 200
