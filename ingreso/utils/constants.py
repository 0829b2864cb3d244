"""
Application-wide constants for Ingreso Rápido.

Defaults for the school's time zone, the nightly auto-checkout cutoff and the
lifetimes of PIN sessions and manager tokens. Most of them can be overridden
through app config.
"""

DEFAULT_TIMEZONE = "America/Guayaquil"

# Open sessions are closed at this local time on the day they were opened
AUTO_CHECKOUT_CUTOFF_HOUR = 20
AUTO_CHECKOUT_CUTOFF_MINUTE = 30

# Nightly maintenance job, a few minutes after the cutoff
AUTO_CHECKOUT_JOB_HOUR = 20
AUTO_CHECKOUT_JOB_MINUTE = 35

PIN_SESSION_TTL_MINUTES = 30
MANAGER_PIN_SESSION_TTL_MINUTES = 10
MANAGER_TOKEN_TTL_SECONDS = 60 * 60

PIN_COOKIE_NAMES = {
    "staff": "ir_pin_staff",
    "manager": "ir_pin_manager",
}

# Failed PIN attempts allowed per client IP
PIN_VERIFY_RATE_LIMIT = "5 per 10 minutes"

# Student statuses that may check in; NULL counts as active
ACTIVE_STUDENT_STATUSES = {"activo", "activa", "active"}

STUDENT_SEARCH_LIMIT = 6
REPORT_ROW_LIMIT = 500

DEFAULT_MV_REFRESH_STATEMENT = "SELECT mart.refresh_all_mvs()"

# Postgres SQLSTATE for insufficient_privilege
PERMISSION_DENIED_SQLSTATE = "42501"
