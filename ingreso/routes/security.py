"""
PIN security routes for Ingreso Rápido.

JSON endpoints used by the kiosk and dashboard scripts (status, verify,
update, session check, logout, manager token) plus the browser PIN prompt
that gated pages fall back to.
"""

from flask import Blueprint, current_app, flash, jsonify, redirect, render_template, request, url_for
from sqlalchemy.exc import SQLAlchemyError

from forms import PinForm
from ingreso.auth import (
    clear_pin_session,
    has_valid_pin_session,
    is_manager_authorized,
    issue_manager_token,
    mint_pin_session,
)
from ingreso.extensions import csrf, db, get_real_ip_for_limiter, limiter
from ingreso.models import PinScope
from ingreso.utils.constants import PIN_VERIFY_RATE_LIMIT
from ingreso.utils.helpers import is_safe_url
from ingreso.utils.pins import (
    PinAuthorizationError,
    PinError,
    change_security_pin,
    get_pin_statuses,
    get_security_pin_summary,
    verify_security_pin,
)

security_bp = Blueprint('security', __name__)


def _failed_attempt(response):
    """Only rejected PINs count against the attempt allowance."""
    return response.status_code == 401


# All PIN entry points share one attempt allowance per client IP
pin_attempt_limit = limiter.shared_limit(
    PIN_VERIFY_RATE_LIMIT,
    scope="pin-attempts",
    deduct_when=_failed_attempt,
    error_message="Too many attempts. Please wait a few minutes and try again.",
)


def _payload():
    return request.get_json(silent=True) or {}


# -------------------- STATUS --------------------

@security_bp.route('/api/security/pins', methods=['GET'])
def pin_status():
    """Which scopes have a PIN configured, and when they last changed."""
    try:
        return jsonify({"pins": get_pin_statuses(), "summary": get_security_pin_summary()})
    except SQLAlchemyError:
        current_app.logger.error("Failed to load PIN status", exc_info=True)
        return jsonify({"error": "Could not load PIN status"}), 500


@security_bp.route('/api/security/session', methods=['POST'])
def session_check():
    scope = PinScope.parse(_payload().get("scope"))
    if scope is None:
        return jsonify({"error": "Invalid scope"}), 400
    if scope is PinScope.MANAGER:
        authorized = is_manager_authorized()
    else:
        authorized = has_valid_pin_session(scope)
    return jsonify({"authorized": authorized, "scope": scope.value})


# -------------------- VERIFY AND UPDATE --------------------

@security_bp.route('/api/security/verify', methods=['POST'])
@pin_attempt_limit
def verify_pin():
    data = _payload()
    scope = PinScope.parse(data.get("scope"))
    if scope is None:
        return jsonify({"error": "Invalid scope"}), 400

    try:
        valid = verify_security_pin(scope, data.get("pin"))
    except SQLAlchemyError:
        current_app.logger.error("PIN verification failed", exc_info=True)
        return jsonify({"error": "Could not verify PIN"}), 500

    if not valid:
        current_app.logger.warning(f"Failed {scope.value} PIN attempt from {get_real_ip_for_limiter()}")
        return jsonify({"valid": False, "error": "Incorrect PIN"}), 401

    response = jsonify({"valid": True, "scope": scope.value})
    mint_pin_session(response, scope)
    current_app.logger.info(f"{scope.value} PIN session started")
    return response


@security_bp.route('/api/security/update', methods=['POST'])
@pin_attempt_limit
def update_pin():
    """Change the PIN of a scope; see change_security_pin for who may do it."""
    data = _payload()
    scope = PinScope.parse(data.get("scope"))
    if scope is None:
        return jsonify({"error": "Invalid scope"}), 400

    try:
        change_security_pin(
            scope,
            data.get("newPin", data.get("pin")),
            manager_pin=data.get("managerPin", data.get("currentPin")),
        )
        summary = get_security_pin_summary()
    except PinAuthorizationError as e:
        current_app.logger.warning(
            f"Rejected {scope.value} PIN change from {get_real_ip_for_limiter()}: bad manager PIN"
        )
        return jsonify({"error": str(e)}), 401
    except PinError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.error(f"Failed to update {scope.value} PIN", exc_info=True)
        return jsonify({"error": "Could not update PIN"}), 500

    response = jsonify({"ok": True, "scope": scope.value, "summary": summary})
    mint_pin_session(response, scope)
    return response


@security_bp.route('/api/security/logout', methods=['POST'])
def logout():
    raw_scope = _payload().get("scope")
    if raw_scope is None:
        scopes = list(PinScope)
    else:
        scope = PinScope.parse(raw_scope)
        if scope is None:
            return jsonify({"error": "Invalid scope"}), 400
        scopes = [scope]

    response = jsonify({"ok": True, "cleared": [s.value for s in scopes]})
    for scope in scopes:
        clear_pin_session(response, scope)
    return response


# -------------------- MANAGER TOKEN --------------------

@security_bp.route('/api/auth/manager-pin', methods=['POST'])
@csrf.exempt
@pin_attempt_limit
def manager_pin_login():
    """Exchange the manager PIN for a bearer token (and a manager session cookie)."""
    try:
        valid = verify_security_pin(PinScope.MANAGER, _payload().get("pin"))
    except SQLAlchemyError:
        current_app.logger.error("Manager PIN verification failed", exc_info=True)
        return jsonify({"error": "Could not verify PIN"}), 500

    if not valid:
        current_app.logger.warning(f"Failed manager token request from {get_real_ip_for_limiter()}")
        return jsonify({"error": "Invalid PIN"}), 401

    response = jsonify(issue_manager_token())
    mint_pin_session(response, PinScope.MANAGER)
    return response


# -------------------- BROWSER PROMPT --------------------

@security_bp.route('/security/prompt', methods=['GET', 'POST'])
@pin_attempt_limit
def pin_prompt():
    form = PinForm()
    if request.method == 'GET':
        form.scope.data = request.args.get('scope', PinScope.STAFF.value)
        form.next.data = request.args.get('next', '')

    scope = PinScope.parse(form.scope.data)
    if scope is None:
        flash("Unknown access area.")
        form.scope.data = PinScope.STAFF.value
        return render_template('pin_prompt.html', form=form, scope=PinScope.STAFF.value), 400

    if form.validate_on_submit():
        if verify_security_pin(scope, form.pin.data):
            next_url = form.next.data
            if not next_url or not is_safe_url(next_url):
                next_url = url_for('main.home')
            response = redirect(next_url)
            mint_pin_session(response, scope)
            return response

        current_app.logger.warning(f"Failed {scope.value} PIN prompt attempt from {get_real_ip_for_limiter()}")
        flash("Incorrect PIN.")
        return render_template('pin_prompt.html', form=form, scope=scope.value), 401

    return render_template('pin_prompt.html', form=form, scope=scope.value)
