# rentpay/__init__.py
from __future__ import annotations

import io
import logging
import os as _os
from datetime import date
from logging.handlers import RotatingFileHandler

import click
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

# Shared extensions (singletons) live in rentpay/extensions.py
from rentpay.extensions import db, limiter, migrate

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _mask_uri(uri: str) -> str:
    """Hide password in logs."""
    if "@" in uri and "://" in uri:
        head, tail = uri.split("://", 1)
        creds, rest = tail.split("@", 1)
        if ":" in creds:
            user, _pwd = creds.split(":", 1)
            return f"{head}://{user}:***@{rest}"
    return uri


def _configure_logging(app: Flask) -> None:
    """stderr + rotating file, shared by the app logger and the provider modules."""
    stderr_handler = logging.StreamHandler()
    if hasattr(stderr_handler.stream, "buffer"):
        stderr_handler.setStream(io.TextIOWrapper(stderr_handler.stream.buffer, encoding="utf-8", errors="replace"))
    stderr_handler.setLevel(logging.INFO)
    stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers = [stderr_handler]

    log_path = app.config.get("APP_ERROR_LOG")
    if log_path:
        log_dir = _os.path.dirname(log_path)
        if log_dir:
            _os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    app.logger.handlers.clear()
    for handler in handlers:
        app.logger.addHandler(handler)
    app.logger.setLevel(logging.INFO)
    app.logger.propagate = False

    # Adapter / factory log through module loggers under this package
    package_logger = logging.getLogger("rentpay")
    package_logger.handlers.clear()
    for handler in handlers:
        package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)
    package_logger.propagate = False


def create_app(config_object=None, **overrides) -> Flask:
    # .env first: Config reads the environment when it is imported
    load_dotenv()
    from rentpay.config import Config

    app = Flask(__name__, instance_relative_config=False)
    app.config.from_object(config_object or Config)
    app.config.update(overrides)

    if not app.config.get("TESTING"):
        _configure_logging(app)

    # ---- DB / Extensions init ----------------------------------------------
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    from rentpay import models_autopay, models_billing, models_connect, models_webhook  # noqa: F401

    app.logger.info(f"Logger initialized. DB: {_mask_uri(app.config['SQLALCHEMY_DATABASE_URI'])}")

    from rentpay.monitoring import init_sentry
    init_sentry(app)

    # ---- Register blueprints -----------------------------------------------
    from rentpay.payments import payments_bp
    from rentpay.webhooks import webhooks_bp

    app.register_blueprint(payments_bp, url_prefix="/api/payments")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    # Processor retries must never be throttled
    limiter.exempt(webhooks_bp)

    @app.route("/__health__")
    def __health__():
        return "ok", 200

    # ---- Flask CLI commands ------------------------------------------------
    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("Database tables created")

    @app.cli.command("cron-hourly")
    def cron_hourly():
        from rentpay.cron_tasks import run_hourly
        run_hourly(app, db)

    @app.cli.command("cron-daily")
    def cron_daily():
        from rentpay.cron_tasks import run_daily
        run_daily(app, db)

    @app.cli.command("autopay-run")
    @click.option("--date", "run_date", default=None, help="Run as of YYYY-MM-DD (default: today, UTC)")
    def autopay_run(run_date):
        """Charge every AutoPay cycle due on the given day."""
        from rentpay.background_jobs import run_autopay
        summary = run_autopay(app, date.fromisoformat(run_date) if run_date else None)
        if summary is None:
            raise click.ClickException("AutoPay run failed; see the error log")
        click.echo(f"AutoPay: {summary}")

    # ---- General error handlers --------------------------------------------
    @app.errorhandler(404)
    def _404(err):
        return jsonify(error="not_found", message=f"404 Not Found: {request.path}"), 404

    @app.errorhandler(Exception)
    def _500(err):
        if isinstance(err, HTTPException):
            return jsonify(error=err.name.lower().replace(" ", "_"), message=err.description), err.code
        app.logger.exception("Unhandled exception")
        return jsonify(error="internal_error", message="An unexpected error occurred."), 500

    # ---- Background scheduler ----------------------------------------------
    if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
        from rentpay.background_jobs import init_scheduler
        init_scheduler(app)

    return app
