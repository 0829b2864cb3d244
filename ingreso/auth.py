"""
Authentication and authorization utilities for Ingreso Rápido.

Contains PIN session cookies per access scope, the manager bearer token,
authentication decorators, and the maintenance token check.
"""

import hmac
import secrets
from datetime import timedelta
from functools import wraps

from flask import after_this_request, current_app, jsonify, render_template, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from ingreso.models import PinScope
from ingreso.utils.constants import (
    MANAGER_PIN_SESSION_TTL_MINUTES,
    MANAGER_TOKEN_TTL_SECONDS,
    PIN_COOKIE_NAMES,
    PIN_SESSION_TTL_MINUTES,
)
from ingreso.utils.helpers import format_utc_iso, utc_now


# -------------------- SESSION CONFIGURATION --------------------

# Hard ceiling on any PIN session, whatever TTL it was minted with
MAX_PIN_SESSION_AGE_SECONDS = 12 * 60 * 60

MANAGER_TOKEN_SALT = "ingreso-manager-token"


def _scope(scope):
    parsed = PinScope.parse(scope)
    if parsed is None:
        raise ValueError(f"Unknown PIN scope: {scope!r}")
    return parsed


def _session_serializer(scope):
    return URLSafeTimedSerializer(
        current_app.config["SECRET_KEY"],
        salt=f"ingreso-pin-session:{scope.value}",
    )


def _token_serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=MANAGER_TOKEN_SALT)


def cookie_name(scope):
    return PIN_COOKIE_NAMES[_scope(scope).value]


def default_session_ttl(scope):
    """Minutes a freshly verified PIN session lasts for the given scope."""
    scope = _scope(scope)
    if scope is PinScope.MANAGER:
        return current_app.config.get("MANAGER_PIN_SESSION_TTL_MINUTES", MANAGER_PIN_SESSION_TTL_MINUTES)
    return current_app.config.get("PIN_SESSION_TTL_MINUTES", PIN_SESSION_TTL_MINUTES)


# -------------------- PIN SESSIONS --------------------

def _cookie_options():
    return {
        "path": "/",
        "httponly": True,
        "samesite": "Lax",
        "secure": current_app.config.get("SESSION_COOKIE_SECURE", True),
    }


def mint_pin_session(response, scope, ttl_minutes=None):
    """
    Attach a signed, expiring session cookie for a scope to the response.

    The payload carries the scope, an absolute expiry (epoch seconds) and a
    random nonce, so two sessions minted in the same second still differ.

    Returns:
        datetime: UTC expiry of the new session
    """
    scope = _scope(scope)
    if ttl_minutes is None:
        ttl_minutes = default_session_ttl(scope)
    expires_at = utc_now() + timedelta(minutes=ttl_minutes)
    token = _session_serializer(scope).dumps({
        "scope": scope.value,
        "exp": int(expires_at.timestamp()),
        "n": secrets.token_urlsafe(12),
    })

    response.set_cookie(
        cookie_name(scope),
        token,
        max_age=int(ttl_minutes * 60),
        expires=expires_at,
        **_cookie_options(),
    )
    return expires_at


def clear_pin_session(response, scope):
    response.delete_cookie(cookie_name(scope), **_cookie_options())


def _sets_cookie(response, name):
    prefix = f"{name}="
    return any(header.startswith(prefix) for header in response.headers.getlist("Set-Cookie"))


def _discard_on_response(scope):
    """Delete a rejected cookie, unless the view minted a fresh one meanwhile."""
    name = cookie_name(scope)

    @after_this_request
    def discard(response):
        if not _sets_cookie(response, name):
            clear_pin_session(response, scope)
        return response


def has_valid_pin_session(scope):
    """
    Return True when the request carries a live session cookie for the scope.

    A cookie that is tampered with, minted for another scope or past its
    expiry is deleted on the response of the request that presented it.
    """
    scope = _scope(scope)
    raw = request.cookies.get(cookie_name(scope))
    if not raw:
        return False

    try:
        payload = _session_serializer(scope).loads(raw, max_age=MAX_PIN_SESSION_AGE_SECONDS)
    except SignatureExpired:
        current_app.logger.info(f"Discarding {scope.value} PIN session older than the hard limit")
        _discard_on_response(scope)
        return False
    except BadSignature:
        current_app.logger.warning(f"Rejected tampered {scope.value} PIN session cookie")
        _discard_on_response(scope)
        return False

    expires = payload.get("exp") if isinstance(payload, dict) else None
    if (
        not isinstance(payload, dict)
        or payload.get("scope") != scope.value
        or not isinstance(expires, int)
        or expires <= int(utc_now().timestamp())
    ):
        _discard_on_response(scope)
        return False
    return True


# -------------------- MANAGER TOKEN --------------------

def _token_ttl():
    return int(current_app.config.get("MANAGER_TOKEN_TTL_SECONDS", MANAGER_TOKEN_TTL_SECONDS))


def issue_manager_token():
    """Issue a bearer token for API clients that cannot hold cookies."""
    ttl = _token_ttl()
    expires_at = utc_now() + timedelta(seconds=ttl)
    token = _token_serializer().dumps({
        "scope": PinScope.MANAGER.value,
        "exp": int(expires_at.timestamp()),
        "n": secrets.token_urlsafe(12),
    })
    return {
        "token": token,
        "role": PinScope.MANAGER.value,
        "expires_in": ttl,
        "expires_at": format_utc_iso(expires_at),
    }


def verify_manager_token(token):
    if not token:
        return False
    try:
        payload = _token_serializer().loads(token, max_age=_token_ttl())
    except BadSignature:
        return False
    if not isinstance(payload, dict) or payload.get("scope") != PinScope.MANAGER.value:
        return False
    expires = payload.get("exp")
    return isinstance(expires, int) and expires > int(utc_now().timestamp())


def get_bearer_token():
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


def is_manager_authorized():
    """Manager access via a session cookie or a bearer token."""
    if has_valid_pin_session(PinScope.MANAGER):
        return True
    return verify_manager_token(get_bearer_token())


# -------------------- AUTHENTICATION DECORATORS --------------------

def _wants_json():
    if request.path.startswith("/api/"):
        return True
    if request.is_json:
        return True
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return best == "application/json" and request.accept_mimetypes[best] > request.accept_mimetypes["text/html"]


def pin_required(scope):
    """
    Decorator to gate a route behind a PIN scope.

    Scopes are independent: a manager session does not open staff routes.
    API requests without a session get a 401 JSON body; browser requests get
    the PIN prompt, which posts back to the security blueprint and returns
    the user here afterwards.
    """
    scope = _scope(scope)

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if scope is PinScope.MANAGER:
                authorized = is_manager_authorized()
            else:
                authorized = has_valid_pin_session(scope)
            if authorized:
                return f(*args, **kwargs)

            current_app.logger.info(f"PIN gate ({scope.value}) blocked {request.method} {request.path}")
            if _wants_json():
                return jsonify({"error": "PIN required", "scope": scope.value}), 401

            from forms import PinForm
            form = PinForm(scope=scope.value, next=request.full_path.rstrip("?"))
            return render_template("pin_prompt.html", form=form, scope=scope.value), 401
        return decorated_function
    return decorator


def maintenance_token_required(f):
    """
    Decorator for cron-style maintenance endpoints.

    Compares the bearer token against SESSION_MAINTENANCE_TOKEN. With no token
    configured the endpoints stay open, matching a fresh deployment where the
    scheduler runs in-process.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("SESSION_MAINTENANCE_TOKEN")
        if not expected:
            current_app.logger.warning(
                f"SESSION_MAINTENANCE_TOKEN is not set; allowing {request.path} without authorization"
            )
            return f(*args, **kwargs)

        provided = get_bearer_token() or ""
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            current_app.logger.warning(f"Rejected maintenance request to {request.path}: bad token")
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated_function
