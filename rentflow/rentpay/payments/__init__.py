# rentpay/payments/__init__.py
from flask import Blueprint

payments_bp = Blueprint("payments", __name__)

from rentpay.payments import routes  # noqa: E402,F401
