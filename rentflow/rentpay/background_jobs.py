# rentpay/background_jobs.py
"""
In-process background jobs using APScheduler.

Jobs:
- AutoPay run (daily at AUTOPAY_RUN_HOUR_UTC)
- Reconciliation of status-unknown payments (hourly)
- Connected-account status sync (every 6 hours)

Jobs are registered with replace_existing at every start, so the default
in-memory job store is enough. Deployments without a long-running process
use the `flask cron-hourly` / `flask cron-daily` commands instead.

Usage:
    from rentpay.background_jobs import init_scheduler

    init_scheduler(app)
"""

import atexit
import os
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, current_app

from rentpay import db
from rentpay.monitoring import capture_exception


def init_scheduler(app: Flask):
    """Start the background scheduler for this app."""
    # Skip in the Flask reloader parent process
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return None

    executors = {
        "default": ThreadPoolExecutor(max_workers=app.config.get("SCHEDULER_MAX_WORKERS", 3))
    }

    job_defaults = {
        "coalesce": True,  # Combine missed runs
        "max_instances": 1,  # Don't run same job concurrently
        "misfire_grace_time": 300,  # 5 minutes grace period for missed jobs
    }

    scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults, timezone="UTC")

    register_scheduled_jobs(scheduler, app)

    scheduler.start()
    app.logger.info("Background job scheduler started")

    app.scheduler = scheduler
    atexit.register(lambda: scheduler.shutdown(wait=False))

    return scheduler


def register_scheduled_jobs(scheduler, app):
    """Register all scheduled jobs."""

    scheduler.add_job(
        func=run_autopay,
        trigger="cron",
        hour=app.config.get("AUTOPAY_RUN_HOUR_UTC", 14),
        minute=0,
        id="autopay_daily",
        replace_existing=True,
        kwargs={"app": app},
    )

    scheduler.add_job(
        func=reconcile_payments,
        trigger="interval",
        hours=1,
        id="reconcile_payments",
        replace_existing=True,
        kwargs={"app": app},
    )

    scheduler.add_job(
        func=sync_connected_accounts,
        trigger="interval",
        hours=6,
        id="sync_connected_accounts",
        replace_existing=True,
        kwargs={"app": app},
    )

    app.logger.info("Registered 3 scheduled background jobs")


# ===== Scheduled Job Functions =====

def run_autopay(app: Flask, today: Optional[date] = None) -> Optional[Dict[str, int]]:
    """Charge every AutoPay cycle due today. Returns the run summary, or None on failure."""
    with app.app_context():
        from rentpay.services.autopay_service import AutoPayScheduler
        from rentpay.services.charge_service import ChargeProcessor
        from rentpay.services.providers import get_payment_provider

        try:
            provider = get_payment_provider()
            summary = AutoPayScheduler(ChargeProcessor(provider)).run(today)
            if summary["failed"] or summary["needs_attention"]:
                current_app.logger.warning(
                    f"AutoPay run left {summary['failed']} failed and "
                    f"{summary['needs_attention']} needing attention"
                )
            return summary
        except Exception as e:
            current_app.logger.error(f"Error running AutoPay: {e}", exc_info=True)
            db.session.rollback()
            capture_exception(e, job="autopay_daily")
            return None


def reconcile_payments(app: Flask) -> Optional[Dict[str, int]]:
    """Re-query or replay payments whose submission outcome is unknown and settle their AutoPay cycles."""
    with app.app_context():
        from rentpay.services.autopay_service import AutoPayScheduler
        from rentpay.services.charge_service import ChargeProcessor
        from rentpay.services.providers import get_payment_provider

        try:
            summary = AutoPayScheduler(ChargeProcessor(get_payment_provider())).reconcile_pending()
            if summary["checked"]:
                current_app.logger.info(f"Reconciled payments: {summary}")
            return summary
        except Exception as e:
            current_app.logger.error(f"Error reconciling payments: {e}", exc_info=True)
            db.session.rollback()
            capture_exception(e, job="reconcile_payments")
            return None


def sync_connected_accounts(app: Flask) -> Optional[int]:
    """
    Refresh connected accounts that are not yet active or have not synced recently.

    Webhooks keep accounts current; this catches missed deliveries.
    """
    with app.app_context():
        from rentpay.models_connect import ConnectedAccount
        from rentpay.services.connect_service import ConnectAccountManager
        from rentpay.services.providers import get_payment_provider
        from rentpay.services.providers.errors import PaymentProviderError

        try:
            stale_before = datetime.utcnow() - timedelta(hours=6)
            account_ids = [
                a.id
                for a in ConnectedAccount.query.filter(
                    ConnectedAccount.status != "deauthorized",
                    db.or_(
                        ConnectedAccount.status != "active",
                        ConnectedAccount.last_synced_at.is_(None),
                        ConnectedAccount.last_synced_at < stale_before,
                    ),
                ).all()
            ]

            manager = ConnectAccountManager(get_payment_provider())
            synced = 0
            for account_id in account_ids:
                try:
                    manager.sync_status(account_id)
                    synced += 1
                except PaymentProviderError as e:
                    current_app.logger.warning(f"Failed to sync connected account {account_id}: {e.message}")
                    db.session.rollback()
                    continue

            if synced:
                current_app.logger.info(f"Synced {synced} connected account(s)")
            return synced

        except Exception as e:
            current_app.logger.error(f"Error syncing connected accounts: {e}", exc_info=True)
            db.session.rollback()
            capture_exception(e, job="sync_connected_accounts")
            return None
