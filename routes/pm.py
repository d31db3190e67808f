# routes/pm.py
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from services.models import to_json
from services.validation_service import sanitize_int, sanitize_string

pm_bp = Blueprint("pm", __name__, url_prefix="/pm")


def _services():
    return current_app.extensions["maintenance"]


def _warehouse_arg(data=None):
    source = data if data is not None else request.args
    return sanitize_string(source.get("warehouse_id") or current_user.warehouse_id or "", max_length=64)


@pm_bp.route("/generate", methods=["POST"])
@login_required
def generate():
    """Manual PM run for one warehouse, subject to the scheduler's run-lock."""
    data = request.get_json(silent=True) or {}
    warehouse_id = _warehouse_arg(data)
    if not warehouse_id:
        return jsonify({"error": "warehouse_id required"}), 400
    summary = _services().pm_scheduler.run_now(warehouse_id, triggered_by=current_user.id)
    return jsonify(summary.to_dict())


@pm_bp.route("/compliance/<equipment_id>")
@login_required
def compliance(equipment_id):
    services = _services()
    warehouse_id = _warehouse_arg()
    if not warehouse_id:
        return jsonify({"error": "warehouse_id required"}), 400
    lookback = None
    if request.args.get("lookback_days"):
        lookback = timedelta(days=sanitize_int(request.args.get("lookback_days"), min_val=1, max_val=3650))
    report = services.pm_engine.recompute_compliance(equipment_id, warehouse_id, lookback)
    return jsonify(to_json(report))


@pm_bp.route("/schedule/<equipment_id>/<template_id>")
@login_required
def schedule(equipment_id, template_id):
    return jsonify(to_json(_services().pm_engine.get_schedule(equipment_id, template_id)))


@pm_bp.route("/upcoming")
@login_required
def upcoming():
    services = _services()
    warehouse_id = _warehouse_arg()
    if not warehouse_id:
        return jsonify({"error": "warehouse_id required"}), 400
    days = sanitize_int(request.args.get("days", 7), min_val=1, max_val=365, default=7)
    start = services.pm_engine.clock()
    return jsonify(to_json(services.pm_engine.upcoming(warehouse_id, start, start + timedelta(days=days))))


@pm_bp.route("/scheduler/start", methods=["POST"])
@login_required
def scheduler_start():
    if not current_user.can_manage():
        return jsonify({"error": "Permission denied"}), 403
    services = _services()
    return jsonify(to_json(services.runner.start_job(services.pm_scheduler.job_id)))


@pm_bp.route("/scheduler/stop", methods=["POST"])
@login_required
def scheduler_stop():
    if not current_user.can_manage():
        return jsonify({"error": "Permission denied"}), 403
    services = _services()
    return jsonify(to_json(services.runner.stop_job(services.pm_scheduler.job_id)))


@pm_bp.route("/scheduler/status")
@login_required
def scheduler_status():
    return jsonify(_services().pm_scheduler.status())
