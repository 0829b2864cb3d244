"""
Utility modules for Ingreso Rápido.

This package contains reusable helpers and constants:
- helpers: date formatting, local-day arithmetic, URL safety checks, Markdown
- pins: shared PIN storage and verification
- ip_handler: client IP resolution behind trusted proxies
- constants: application-wide defaults (time zone, cutoff, TTLs)
"""

from ingreso.utils.helpers import format_utc_iso, is_safe_url
from ingreso.utils.constants import DEFAULT_TIMEZONE

__all__ = [
    'format_utc_iso',
    'is_safe_url',
    'DEFAULT_TIMEZONE',
]
