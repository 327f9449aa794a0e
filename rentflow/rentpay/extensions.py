# rentpay/extensions.py
from __future__ import annotations

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

# --- SQLAlchemy -------------------------------------------------------------
db = SQLAlchemy()

# --- Flask-Migrate ----------------------------------------------------------
migrate = Migrate()

# --- Rate limiting ----------------------------------------------------------
# Storage and on/off come from RATELIMIT_* config at init_app time
limiter = Limiter(key_func=get_remote_address, default_limits=[])

__all__ = ["db", "migrate", "limiter"]
