# rentpay/webhooks/__init__.py
from flask import Blueprint

webhooks_bp = Blueprint("webhooks", __name__)

from rentpay.webhooks import routes  # noqa: E402,F401
