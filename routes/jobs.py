# routes/jobs.py
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from services.elasticsearch_client import get_es
from services.errors import ConfigurationError
from services.logging_service import log_audit
from services.validation_service import require_int, sanitize_string

jobs_bp = Blueprint('jobs', __name__, url_prefix='/jobs')


def _runner():
    return current_app.extensions["maintenance"].runner


@jobs_bp.route('/', methods=['GET'])
@login_required
def jobs():
    return jsonify(_runner().status())


@jobs_bp.route('/<job_id>/run', methods=['POST'])
@login_required
def run_job(job_id):
    if current_user.role not in ['supervisor', 'manager', 'admin']:
        return jsonify({"error": "Permission denied"}), 403
    data = request.get_json(silent=True) or {}
    warehouse_id = sanitize_string(data.get('warehouse_id', ''), max_length=64) or None
    results = _runner().run_job_now(job_id, warehouse_id=warehouse_id, triggered_by=current_user.id)
    return jsonify({"job_id": job_id, "results": results})


@jobs_bp.route('/<job_id>', methods=['PATCH'])
@login_required
def update_job(job_id):
    if current_user.role not in ['manager', 'admin']:
        return jsonify({"error": "Permission denied"}), 403
    data = request.get_json(silent=True) or {}
    if 'enabled' not in data and 'interval_minutes' not in data:
        raise ConfigurationError("Nothing to update: send 'enabled' and/or 'interval_minutes'")

    runner = _runner()
    status = None
    if 'interval_minutes' in data:
        status = runner.update_job_interval(job_id, require_int(data['interval_minutes'], 'interval_minutes'))
    if 'enabled' in data:
        if not isinstance(data['enabled'], bool):
            raise ConfigurationError("enabled must be true or false", field='enabled')
        status = runner.set_job_enabled(job_id, data['enabled'])

    log_audit(get_es(), 'update_job', current_user.id, details={'job_id': job_id, 'changes': data})
    return jsonify(status)
