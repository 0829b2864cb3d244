"""
Common utility functions for Ingreso Rápido.

This module provides reusable helper functions for:
- Date/time formatting (ISO-8601 with UTC)
- Local-day arithmetic in the school's time zone
- URL safety validation for redirects
- Markdown to HTML conversion with sanitization
"""

from datetime import datetime, date, time, timedelta, timezone
from urllib.parse import urlparse, urljoin

import pytz
from flask import request, current_app, has_app_context
from markupsafe import Markup
import markdown
import bleach

from ingreso.utils.constants import DEFAULT_TIMEZONE


def format_utc_iso(dt):
    """Return a UTC ISO-8601 string (with trailing Z) for a datetime or None."""
    if not dt:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def as_utc(dt):
    """Normalize a datetime to aware UTC; SQLite hands back naive values."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now():
    return datetime.now(timezone.utc)


def get_school_timezone():
    """Return the configured school time zone, falling back to the default."""
    tz_name = DEFAULT_TIMEZONE
    if has_app_context():
        tz_name = current_app.config.get("TIMEZONE") or DEFAULT_TIMEZONE
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        if has_app_context():
            current_app.logger.warning(f"Invalid timezone '{tz_name}', using {DEFAULT_TIMEZONE}.")
        return pytz.timezone(DEFAULT_TIMEZONE)


def local_date_of(dt, tz=None):
    """Calendar date of a UTC datetime in the school time zone."""
    tz = tz or get_school_timezone()
    return as_utc(dt).astimezone(tz).date()


def local_datetime_utc(day, at=time(0, 0), tz=None):
    """UTC instant of a local wall-clock time on the given date."""
    tz = tz or get_school_timezone()
    local = tz.localize(datetime.combine(day, at))
    return local.astimezone(timezone.utc)


def local_day_bounds(day, tz=None):
    """Return the [start, end) UTC range covering a local calendar date."""
    tz = tz or get_school_timezone()
    start = local_datetime_utc(day, tz=tz)
    end = local_datetime_utc(day + timedelta(days=1), tz=tz)
    return start, end


def parse_date(value):
    """Parse a YYYY-MM-DD string; returns None for anything else."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_timestamp(value, tz=None):
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime; None when invalid.

    Values without an offset are school wall-clock times, which is what the
    payroll editor sends ("2024-03-05T09:00").
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        tz = tz or get_school_timezone()
        parsed = tz.localize(parsed)
    return parsed.astimezone(timezone.utc)


def is_safe_url(target):
    """
    Ensure a redirect URL is safe by checking if it's on the same domain.
    """
    if not target:
        return True
    ref_url = urlparse(request.host_url)
    test_url = urlparse(urljoin(request.host_url, target))
    return test_url.scheme in ('http', 'https') and ref_url.netloc == test_url.netloc


def render_markdown(text):
    """
    Convert Markdown text to sanitized HTML.

    Used for operator-provided notices (maintenance message, kiosk banner).

    Returns:
        Markup object containing sanitized HTML (safe for rendering in templates)
    """
    if not text:
        return Markup('')

    md = markdown.Markdown(extensions=['extra', 'nl2br', 'sane_lists'])
    html = md.convert(text)

    allowed_tags = [
        'p', 'br', 'span', 'div',
        'h1', 'h2', 'h3', 'h4',
        'strong', 'em', 'u', 's', 'del', 'code',
        'ul', 'ol', 'li',
        'a',
        'blockquote',
        'hr',
    ]
    allowed_attributes = {
        'a': ['href', 'title', 'rel'],
    }

    cleaner = bleach.Cleaner(
        tags=allowed_tags,
        attributes=allowed_attributes,
        protocols=['http', 'https', 'mailto'],
        strip=True,
        strip_comments=True,
    )
    return Markup(cleaner.clean(html))
