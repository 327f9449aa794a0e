# rentpay/services/__init__.py
from rentpay import db


def end_transaction():
    """Commit pending work so no DB transaction stays open across a provider call."""
    db.session.commit()
