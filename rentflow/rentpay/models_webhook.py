# rentpay/models_webhook.py
from datetime import datetime

from rentpay import db


class WebhookEventRecord(db.Model):
    """Dedup ledger. The unique event_id is what makes webhook replays harmless."""
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), unique=True, nullable=False)
    provider_type = db.Column(db.String(16), nullable=False, default="stripe")
    event_type = db.Column(db.String(128), nullable=False, index=True)  # normalized type
    raw_type = db.Column(db.String(128), nullable=True)
    source = db.Column(db.String(16), nullable=False, default="platform")  # platform, connect
    account_ref = db.Column(db.String(64), nullable=True)  # processor connected account id
    status = db.Column(db.String(16), nullable=False, default="processed")  # processed, ignored
    received_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<WebhookEventRecord {self.event_id} {self.event_type} ({self.status})>"
