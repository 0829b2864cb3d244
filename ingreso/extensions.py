"""
Extension instances shared by the Ingreso Rápido app.

They are created unbound here so models, routes and the maintenance jobs can
import them without importing the app; create_app() binds them.
"""

import os

from apscheduler.schedulers.background import BackgroundScheduler
from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

from ingreso.utils.ip_handler import get_real_ip

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()
bcrypt = Bcrypt()

# Runs the nightly auto-checkout; started by create_app() outside of tests
scheduler = BackgroundScheduler()


def get_real_ip_for_limiter():
    """Rate-limit key: the client IP, taken from proxy headers only when a trusted proxy sent them."""
    return get_real_ip()


def _limiter_storage_uri():
    explicit = os.environ.get('RATELIMIT_STORAGE_URI')
    if explicit:
        return explicit
    if os.environ.get('CI') or os.environ.get('GITHUB_ACTIONS'):
        return 'memory://'
    # Every gunicorn worker has to see the same PIN attempt counters
    return os.environ.get('REDIS_URL', 'redis://localhost:6379')


# Kiosk polling stays well under these; the PIN endpoints add a tighter shared limit
limiter = Limiter(
    key_func=get_real_ip_for_limiter,
    default_limits=["2000 per day", "300 per hour"],
    storage_uri=_limiter_storage_uri(),
    strategy="fixed-window",
)
