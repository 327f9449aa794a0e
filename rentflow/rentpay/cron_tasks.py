# rentpay/cron_tasks.py
"""
Cron entry points for hosts without a long-running scheduler process.

    flask cron-hourly   -> reconcile status-unknown payments
    flask cron-daily    -> AutoPay run + connected-account sync
"""
from __future__ import annotations

from datetime import datetime

from rentpay.background_jobs import reconcile_payments, run_autopay, sync_connected_accounts


def run_hourly(app, db):
    """Periodic housekeeping. Keep this light; heavy jobs belong in run_daily."""
    app.logger.info("[CRON] hourly tick at %s", datetime.utcnow().isoformat())
    reconcile_payments(app)


def run_daily(app, db):
    """
    Daily tasks.
    - Charges AutoPay cycles due today (safe to re-run: no double charges)
    - Refreshes connected accounts that missed webhook updates
    """
    app.logger.info("[CRON] daily tick at %s", datetime.utcnow().isoformat())

    summary = run_autopay(app)
    if summary is None:
        app.logger.error("[CRON] AutoPay run failed")

    sync_connected_accounts(app)
