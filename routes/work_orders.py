# routes/work_orders.py
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from services.models import to_json
from services.validation_service import require_fields

work_orders_bp = Blueprint("work_orders", __name__, url_prefix="/work-orders")


def _service():
    return current_app.extensions["maintenance"].work_orders


@work_orders_bp.route("/<work_order_id>/status", methods=["POST"])
@login_required
def change_status(work_order_id):
    data = request.get_json(silent=True) or {}
    require_fields(data, "status")
    work_order = _service().transition(work_order_id, data["status"], user_id=current_user.id)
    return jsonify(to_json(work_order))


@work_orders_bp.route("/<work_order_id>/reopen", methods=["POST"])
@login_required
def reopen(work_order_id):
    work_order = _service().reopen(work_order_id, user_id=current_user.id)
    return jsonify(to_json(work_order))
