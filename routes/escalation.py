# routes/escalation.py
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from services.models import to_json
from services.validation_service import require_fields, sanitize_string

escalation_bp = Blueprint("escalation", __name__, url_prefix="/escalation")


def _engine():
    return current_app.extensions["maintenance"].escalation_engine


def _forbidden():
    return jsonify({"error": "Permission denied"}), 403


@escalation_bp.route("/work-orders/<work_order_id>/escalate", methods=["POST"])
@login_required
def escalate(work_order_id):
    data = request.get_json(silent=True) or {}
    require_fields(data, "escalate_to")
    action = _engine().manually_escalate(
        work_order_id,
        escalate_to_user_id=sanitize_string(data["escalate_to"], max_length=64),
        reason=sanitize_string(data.get("reason", ""), max_length=1000),
        escalated_by_user_id=current_user.id,
    )
    return jsonify(to_json(action)), 201


@escalation_bp.route("/rules/<warehouse_id>", methods=["GET"])
@login_required
def list_rules(warehouse_id):
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    return jsonify({"rules": to_json(_engine().list_rules(warehouse_id, include_inactive=include_inactive))})


@escalation_bp.route("/rules/<warehouse_id>", methods=["POST"])
@login_required
def create_rule(warehouse_id):
    if not current_user.can_manage():
        return _forbidden()
    rule = _engine().create_rule(warehouse_id, request.get_json(silent=True) or {})
    return jsonify(to_json(rule)), 201


@escalation_bp.route("/rules/<warehouse_id>/<rule_id>", methods=["PUT"])
@login_required
def update_rule(warehouse_id, rule_id):
    if not current_user.can_manage():
        return _forbidden()
    rule = _engine().update_rule(warehouse_id, rule_id, request.get_json(silent=True) or {})
    return jsonify(to_json(rule))


@escalation_bp.route("/rules/<warehouse_id>/<rule_id>", methods=["DELETE"])
@login_required
def deactivate_rule(warehouse_id, rule_id):
    if not current_user.can_manage():
        return _forbidden()
    return jsonify(to_json(_engine().deactivate_rule(warehouse_id, rule_id)))


@escalation_bp.route("/history/<work_order_id>")
@login_required
def history(work_order_id):
    return jsonify({"history": to_json(_engine().history(work_order_id))})


@escalation_bp.route("/stats/<warehouse_id>")
@login_required
def stats(warehouse_id):
    return jsonify(_engine().escalation_stats(warehouse_id))


@escalation_bp.route("/evaluate", methods=["POST"])
@login_required
def evaluate():
    """Manual escalation pass for one warehouse, under the scheduler's run-lock."""
    data = request.get_json(silent=True) or {}
    warehouse_id = sanitize_string(data.get("warehouse_id") or current_user.warehouse_id or "", max_length=64)
    if not warehouse_id:
        return jsonify({"error": "warehouse_id required"}), 400
    scheduler = current_app.extensions["maintenance"].escalation_scheduler
    result = scheduler.run_now(warehouse_id, triggered_by=current_user.id)
    return jsonify(result.to_dict())
