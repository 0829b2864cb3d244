"""
Application factory for Ingreso Rápido.

This module provides create_app() which initializes Flask, extensions,
logging, Jinja filters, and registers blueprints.
"""

import os
import logging
from datetime import datetime, date
from logging.handlers import RotatingFileHandler

import pytz
from flask import Flask, request, render_template, jsonify, g
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# Validate required environment variables
required_env_vars = ["SECRET_KEY", "DATABASE_URL", "FLASK_ENV"]
missing_vars = [var for var in required_env_vars if not os.getenv(var)]
if missing_vars:
    raise RuntimeError(
        "Missing required environment variables: " + ", ".join(missing_vars)
    )


# -------------------- UTILITIES --------------------
from ingreso.utils.constants import (
    AUTO_CHECKOUT_JOB_HOUR,
    AUTO_CHECKOUT_JOB_MINUTE,
    DEFAULT_MV_REFRESH_STATEMENT,
    DEFAULT_TIMEZONE,
    MANAGER_PIN_SESSION_TTL_MINUTES,
    MANAGER_TOKEN_TTL_SECONDS,
    PIN_SESSION_TTL_MINUTES,
)
from ingreso.utils.helpers import format_utc_iso, get_school_timezone, render_markdown


def _int_env(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {value!r}")


def _list_env(name):
    return [item.strip().lower() for item in os.getenv(name, "").split(",") if item.strip()]


def format_datetime(value, fmt='%Y-%m-%d %H:%M'):
    """
    Convert a UTC datetime to the school's timezone and format it.
    Handles both datetime and date objects.
    """
    if not value:
        return ''

    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, datetime.min.time())

    # Localize naive datetimes as UTC before converting
    dt = value if getattr(value, 'tzinfo', None) else pytz.utc.localize(value)
    return dt.astimezone(get_school_timezone()).strftime(fmt)


# -------------------- APPLICATION FACTORY --------------------

def create_app():
    """
    Application factory function.

    Creates and configures the Flask application, initializes extensions,
    sets up logging, registers Jinja filters, and registers blueprints.

    Returns:
        Flask: Configured Flask application instance
    """
    # templates/ and static/ live at the project root, next to the package
    basedir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

    app = Flask(__name__,
                template_folder=os.path.join(basedir, 'templates'),
                static_folder=os.path.join(basedir, 'static'))

    # -------------------- CONFIGURATION --------------------
    env = os.environ["FLASK_ENV"]
    app.config.from_mapping(
        DEBUG=False,
        ENV=env,
        SECRET_KEY=os.environ["SECRET_KEY"],
        SQLALCHEMY_DATABASE_URI=os.environ["DATABASE_URL"],
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        SESSION_COOKIE_SECURE=env not in {"development", "testing"},
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        TIMEZONE=os.getenv("TIMEZONE", DEFAULT_TIMEZONE),
        PIN_SESSION_TTL_MINUTES=_int_env("PIN_SESSION_TTL_MINUTES", PIN_SESSION_TTL_MINUTES),
        MANAGER_PIN_SESSION_TTL_MINUTES=_int_env("MANAGER_PIN_SESSION_TTL_MINUTES", MANAGER_PIN_SESSION_TTL_MINUTES),
        MANAGER_TOKEN_TTL_SECONDS=_int_env("MANAGER_TOKEN_TTL_SECONDS", MANAGER_TOKEN_TTL_SECONDS),
        SESSION_MAINTENANCE_TOKEN=os.getenv("SESSION_MAINTENANCE_TOKEN", ""),
        BCRYPT_LOG_ROUNDS=_int_env("BCRYPT_LOG_ROUNDS", 12),
        REPORT_VIEWS=_list_env("REPORT_VIEWS"),
        MV_REFRESH_STATEMENT=os.getenv("MV_REFRESH_STATEMENT", DEFAULT_MV_REFRESH_STATEMENT),
        AUTO_CHECKOUT_HOUR=_int_env("AUTO_CHECKOUT_HOUR", AUTO_CHECKOUT_JOB_HOUR),
        AUTO_CHECKOUT_MINUTE=_int_env("AUTO_CHECKOUT_MINUTE", AUTO_CHECKOUT_JOB_MINUTE),
        KIOSK_NOTICE=os.getenv("KIOSK_NOTICE", ""),
        TRUSTED_PROXIES=[item.strip() for item in os.getenv("TRUSTED_PROXIES", "").split(",") if item.strip()],
    )

    # -------------------- EXTENSIONS --------------------
    from ingreso.extensions import db, migrate, csrf, limiter, bcrypt

    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    limiter.init_app(app)
    bcrypt.init_app(app)

    # -------------------- LOGGING --------------------
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    log_format = os.getenv(
        "LOG_FORMAT",
        "[%(asctime)s] %(levelname)s in %(module)s: %(message)s",
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(logging.Formatter(log_format))

    app.logger.setLevel(log_level)
    # Prevent duplicate log entries by clearing handlers first
    app.logger.handlers.clear()
    app.logger.addHandler(stream_handler)

    if env == "production":
        log_file = os.getenv("LOG_FILE", "ingreso.log")
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(log_format))
        app.logger.addHandler(file_handler)

    # -------------------- JINJA2 FILTERS AND GLOBALS --------------------
    app.jinja_env.filters['format_datetime'] = format_datetime
    app.jinja_env.filters['utc_iso'] = format_utc_iso
    app.jinja_env.filters['markdown'] = render_markdown

    # -------------------- MAINTENANCE MODE --------------------
    def is_maintenance_mode_enabled():
        """Return True when maintenance mode is enabled via environment variable."""
        return os.getenv("MAINTENANCE_MODE", "").lower() in {"1", "true", "yes", "on"}

    @app.before_request
    def show_maintenance_page():
        """Display a maintenance page (or 503 JSON) while maintenance mode is on."""
        if not is_maintenance_mode_enabled():
            return None
        if request.endpoint in {"main.health_check"}:
            return None
        if request.path.startswith("/static/"):
            return None

        bypass_token = os.getenv("MAINTENANCE_BYPASS_TOKEN", "")
        if bypass_token and request.args.get("maintenance_bypass") == bypass_token:
            app.logger.debug("Maintenance bypass granted (token).")
            g.maintenance_bypass_active = True
            return None

        message = os.getenv(
            "MAINTENANCE_MESSAGE",
            "Ingreso Rápido is down for scheduled maintenance. Please check in at the front desk.",
        )
        if request.path.startswith("/api/"):
            return jsonify({"error": "Service under maintenance"}), 503
        return render_template(
            "maintenance.html",
            message=message,
            expected_back=os.getenv("MAINTENANCE_EXPECTED_END", ""),
        ), 503

    # -------------------- ERROR HANDLERS --------------------
    @app.errorhandler(429)
    def rate_limited(error):
        app.logger.warning(f"Rate limit hit on {request.path}: {error.description}")
        if request.path.startswith("/api/") or request.is_json:
            return jsonify({"error": "Too many attempts. Please wait a few minutes and try again."}), 429
        return render_template("rate_limited.html"), 429

    # -------------------- REGISTER BLUEPRINTS --------------------
    from ingreso.routes.main import main_bp
    from ingreso.routes.security import security_bp
    from ingreso.routes.checkin import checkin_bp
    from ingreso.routes.staff import staff_bp
    from ingreso.routes.admin import admin_bp
    from ingreso.routes.reports import reports_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(security_bp)
    app.register_blueprint(checkin_bp)
    app.register_blueprint(staff_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(reports_bp)

    # -------------------- SECURITY HEADERS --------------------
    @app.after_request
    def set_security_headers(response):
        """
        Add security headers to all HTTP responses.

        - HSTS: Force HTTPS connections
        - X-Frame-Options: Prevent clickjacking
        - X-Content-Type-Options: Prevent MIME sniffing attacks
        - CSP: Mitigate XSS attacks
        - Referrer-Policy: Control referrer information leakage

        See: https://owasp.org/www-project-secure-headers/
        """
        if request.path.startswith('/static/'):
            return response

        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        response.headers['X-Frame-Options'] = 'SAMEORIGIN'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'

        # Kiosk pages only load their own scripts and styles
        csp_directives = [
            "default-src 'self'",
            "script-src 'self' 'unsafe-inline'",
            "style-src 'self' 'unsafe-inline'",
            "img-src 'self' data:",
            "connect-src 'self'",
            "base-uri 'self'",
            "form-action 'self'",
            "frame-ancestors 'self'",
        ]
        response.headers['Content-Security-Policy'] = "; ".join(csp_directives)

        permissions = [
            "geolocation=()",
            "microphone=()",
            "camera=()",
            "payment=()",
            "usb=()",
        ]
        response.headers['Permissions-Policy'] = ", ".join(permissions)

        # PIN-gated answers must never be served from a shared cache
        if request.path.startswith('/api/'):
            response.headers.setdefault('Cache-Control', 'no-store')

        return response

    # -------------------- CLI COMMANDS --------------------
    from ingreso import cli_commands
    cli_commands.init_app(app)

    # -------------------- SCHEDULED TASKS --------------------
    if not app.config.get("TESTING") and app.config.get("ENV") != "testing":
        from ingreso.scheduled_tasks import init_scheduled_tasks
        init_scheduled_tasks(app)

    return app


# Create a default application instance for WSGI servers and tests
app = create_app()

# Re-export commonly used objects for convenience
from ingreso.extensions import db  # noqa: E402
from ingreso.models import (  # noqa: E402
    AccessPin,
    AutoCheckoutRun,
    Lesson,
    PinScope,
    StaffAttendance,
    StaffMember,
    Student,
    StudentAttendance,
)

__all__ = [
    "app",
    "create_app",
    "db",
    "AccessPin",
    "AutoCheckoutRun",
    "Lesson",
    "PinScope",
    "StaffAttendance",
    "StaffMember",
    "Student",
    "StudentAttendance",
]
