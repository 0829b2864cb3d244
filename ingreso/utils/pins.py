"""
Storage and verification of the shared access PINs.

Each scope (staff, manager) has one authoritative bcrypt hash: the most
recently updated active AccessPin row for that role. Plain PINs never leave
this module and are never logged.
"""

import re

from flask import current_app

from ingreso.extensions import db, bcrypt
from ingreso.models import AccessPin, PinScope, _utc_now
from ingreso.utils.helpers import as_utc, format_utc_iso


PIN_PATTERN = re.compile(r"^[0-9]{4,8}$")
BCRYPT_HASH_PATTERN = re.compile(r"^\$2[aby]\$\d{2}\$[./A-Za-z0-9]{53}$")


class PinError(ValueError):
    """Raised when a PIN cannot be accepted (bad format, unknown scope)."""


class PinAuthorizationError(PinError):
    """The manager PIN required for a change was missing or wrong."""


def _require_scope(scope):
    parsed = PinScope.parse(scope)
    if parsed is None:
        raise PinError("Unknown PIN scope.")
    return parsed


def sanitize_pin(value):
    """Return the PIN as a digit string, or raise PinError."""
    if value is None:
        raise PinError("PIN is required.")
    pin = str(value).strip()
    if not PIN_PATTERN.match(pin):
        raise PinError("PIN must be 4 to 8 digits.")
    return pin


def is_pin_hash(value):
    return isinstance(value, str) and bool(BCRYPT_HASH_PATTERN.match(value))


def hash_pin(pin):
    pin = sanitize_pin(pin)
    rounds = current_app.config.get("BCRYPT_LOG_ROUNDS", 12)
    return bcrypt.generate_password_hash(pin, rounds).decode("utf-8")


def _active_pin(scope):
    return (
        AccessPin.query
        .filter_by(role=scope, active=True)
        .order_by(AccessPin.updated_at.desc(), AccessPin.id.desc())
        .first()
    )


def is_security_pin_enabled(scope):
    return _active_pin(_require_scope(scope)) is not None


def get_pin_statuses():
    """Return one status entry per scope: {scope, isSet, updatedAt}."""
    statuses = []
    for scope in PinScope:
        row = _active_pin(scope)
        statuses.append({
            "scope": scope.value,
            "isSet": row is not None,
            "updatedAt": format_utc_iso(row.updated_at) if row else None,
        })
    return statuses


def get_security_pin_summary():
    active = {scope: _active_pin(scope) for scope in PinScope}
    timestamps = [as_utc(row.updated_at) for row in active.values() if row is not None and row.updated_at]
    return {
        "hasManager": active[PinScope.MANAGER] is not None,
        "hasStaff": active[PinScope.STAFF] is not None,
        "updatedAt": format_utc_iso(max(timestamps)) if timestamps else None,
    }


def verify_security_pin(scope, pin):
    """
    Compare a candidate PIN against the stored hash for a scope.

    Never raises for bad input: a malformed PIN, an unknown scope or a scope
    without a PIN all verify as False.
    """
    parsed = PinScope.parse(scope)
    if parsed is None:
        return False
    try:
        candidate = sanitize_pin(pin)
    except PinError:
        return False

    row = _active_pin(parsed)
    if row is None:
        return False
    if not is_pin_hash(row.pin_hash):
        current_app.logger.error(f"Stored {parsed.value} PIN is not a bcrypt hash; refusing to compare")
        return False
    return bcrypt.check_password_hash(row.pin_hash, candidate)


def update_security_pin(scope, new_pin):
    """Replace the PIN of a scope. Returns the new AccessPin row."""
    parsed = _require_scope(scope)
    pin_hash = hash_pin(new_pin)
    now = _utc_now()

    AccessPin.query.filter_by(role=parsed, active=True).update(
        {"active": False, "updated_at": now}, synchronize_session=False
    )
    row = AccessPin(role=parsed, pin_hash=pin_hash, active=True, created_at=now, updated_at=now)
    db.session.add(row)
    db.session.commit()
    current_app.logger.info(f"{parsed.value} PIN updated")
    return row


def change_security_pin(scope, new_pin, manager_pin=None):
    """
    Replace a PIN on behalf of a user, enforcing who may do it.

    The staff PIN can only be changed with the current manager PIN. The
    manager PIN needs the current one too, except for the very first setup.
    """
    parsed = _require_scope(scope)
    manager_is_set = is_security_pin_enabled(PinScope.MANAGER)
    if parsed is PinScope.STAFF and not manager_is_set:
        raise PinError("Set the manager PIN before the staff PIN.")
    if manager_is_set and not verify_security_pin(PinScope.MANAGER, manager_pin):
        raise PinAuthorizationError("Manager PIN is incorrect.")
    return update_security_pin(parsed, new_pin)
