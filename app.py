# app.py
import atexit
import logging
import os

from flask import Flask, jsonify
from flask_login import LoginManager

from config import (
    DEBUG, ENVIRONMENT, IS_PRODUCTION, JOBS_AUTOSTART, LOG_LEVEL, SECRET_KEY, STORE_BACKEND, AUDIT_FALLBACK_LOG,
)
from routes.escalation import escalation_bp
from routes.jobs import jobs_bp
from routes.pm import pm_bp
from routes.work_orders import work_orders_bp
from services.auth_service import load_user_from_store
from services.container import build_services
from services.errors import MaintenanceError
from services.logging_service import configure_audit_fallback
from services.models import utcnow

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    # Configure scheduler logging
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    configure_audit_fallback(AUDIT_FALLBACK_LOG)


def create_app(store=None, notifier=None, clock=utcnow, start_jobs=None, testing=False):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = SECRET_KEY
    app.config['DEBUG'] = DEBUG
    app.config['TESTING'] = testing
    app.config['ENV'] = ENVIRONMENT

    # Security settings
    app.config['SESSION_COOKIE_SECURE'] = IS_PRODUCTION  # HTTPS only in production
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    if store is None and STORE_BACKEND == "postgres":
        from services.init_db import init_db
        if not init_db():
            logger.error("Database schema could not be initialized")

    services = build_services(store=store, notifier=notifier, clock=clock)
    app.extensions["maintenance"] = services

    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return load_user_from_store(services.store, user_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required"}), 401

    @app.errorhandler(MaintenanceError)
    def handle_maintenance_error(e):
        if e.status_code >= 500:
            logger.error(f"{type(e).__name__}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    app.register_blueprint(pm_bp, url_prefix='/pm')
    app.register_blueprint(escalation_bp, url_prefix='/escalation')
    app.register_blueprint(jobs_bp, url_prefix='/jobs')
    app.register_blueprint(work_orders_bp, url_prefix='/work-orders')

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "environment": ENVIRONMENT, "jobs": services.runner.started})

    if start_jobs is None:
        start_jobs = JOBS_AUTOSTART and not testing
    if start_jobs:
        services.runner.start_all()
        # Ensure scheduler shuts down cleanly on app exit
        atexit.register(services.shutdown)

    return app


if __name__ == "__main__":
    configure_logging()
    app = create_app()

    port = int(os.environ.get('PORT', 5001))
    host = os.environ.get('HOST', '127.0.0.1')
    logger.info(f"Starting maintenance automation on {host}:{port} ({ENVIRONMENT}, debug={DEBUG})")
    # The reloader would start a second job runner
    app.run(host=host, port=port, debug=DEBUG, use_reloader=False)
