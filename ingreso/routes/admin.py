"""
Administration API for Ingreso Rápido.

Session maintenance endpoints called by the external cron (bearer token) and
the payroll endpoints used by the manager dashboard (manager PIN): day
approvals, session corrections and monthly payment status.
"""

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from attendance import safely_close_expired_sessions
from ingreso.auth import maintenance_token_required, pin_required
from ingreso.extensions import csrf, db
from ingreso.maintenance import run_nightly_maintenance, run_scheduled_auto_checkout
from ingreso.models import AutoCheckoutRun
from ingreso.routes.checkin import database_error, parse_id
from payroll import (
    PayrollError,
    add_staff_session,
    approve_day,
    delete_staff_session,
    get_day_sessions,
    get_day_totals,
    get_month_status,
    get_month_summary,
    override_and_approve,
    set_month_paid,
    update_staff_session,
)

admin_bp = Blueprint('admin', __name__, url_prefix='/api')


def _force_requested():
    value = request.args.get('force')
    if value is None:
        value = (request.get_json(silent=True) or {}).get('force')
    return str(value).lower() in {"1", "true", "yes", "on"}


# -------------------- SESSION MAINTENANCE --------------------

@admin_bp.route('/maintenance/sessions', methods=['POST'])
@csrf.exempt
@maintenance_token_required
def session_maintenance():
    """Close expired sessions immediately, outside the nightly ledger."""
    try:
        students_closed, staff_closed = safely_close_expired_sessions()
    except SQLAlchemyError:
        return database_error("Failed to close expired sessions")
    return jsonify({"ok": True, "studentsClosed": students_closed, "staffClosed": staff_closed})


@admin_bp.route('/maintenance/auto-checkout', methods=['POST'])
@csrf.exempt
@maintenance_token_required
def auto_checkout():
    try:
        result = run_scheduled_auto_checkout(force=_force_requested())
    except SQLAlchemyError:
        return database_error("Failed to run auto-checkout")
    status_code = 500 if result["status"] == AutoCheckoutRun.STATUS_ERROR else 200
    return jsonify(result), status_code


@admin_bp.route('/maintenance/nightly', methods=['POST'])
@csrf.exempt
@maintenance_token_required
def nightly_maintenance():
    try:
        result = run_nightly_maintenance(force=_force_requested())
    except SQLAlchemyError:
        return database_error("Failed to run nightly maintenance")
    failed = result["autoCheckout"]["status"] == AutoCheckoutRun.STATUS_ERROR or result["refresh"]["status"] == "error"
    return jsonify(result), 500 if failed else 200


@admin_bp.route('/attendance/resolve-stale', methods=['POST'])
@csrf.exempt
@maintenance_token_required
def resolve_stale():
    try:
        students_closed, staff_closed = safely_close_expired_sessions()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.error("Failed to resolve stale sessions", exc_info=True)
        return jsonify({"status": "error", "message": "Failed to resolve stale sessions"}), 500
    return jsonify({
        "status": "success",
        "studentsClosed": students_closed,
        "staffClosed": staff_closed,
        "message": f"Closed {students_closed} student and {staff_closed} staff sessions.",
    })


# -------------------- PAYROLL --------------------

def _staff_and_date(source):
    staff_id = parse_id(source.get("staffId"))
    work_date = source.get("workDate")
    if not staff_id or not work_date:
        return None, None
    return staff_id, work_date


@admin_bp.route('/payroll/day-sessions', methods=['GET'])
@pin_required('manager')
def payroll_day_sessions():
    staff_id, work_date = _staff_and_date(request.args)
    if not staff_id:
        return jsonify({"error": "staffId and workDate are required."}), 400
    try:
        return jsonify({"sessions": get_day_sessions(staff_id, work_date)})
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to load day sessions")


@admin_bp.route('/payroll/day-totals', methods=['GET'])
@pin_required('manager')
def payroll_day_totals():
    staff_id, work_date = _staff_and_date(request.args)
    if not staff_id:
        return jsonify({"error": "staffId and workDate are required."}), 400
    try:
        return jsonify(get_day_totals(staff_id, work_date))
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to load day totals")


@admin_bp.route('/payroll/approve-day', methods=['POST'])
@pin_required('manager')
def payroll_approve_day():
    data = request.get_json(silent=True) or {}
    staff_id, work_date = _staff_and_date(data)
    if not staff_id:
        return jsonify({"error": "staffId and workDate are required."}), 400

    try:
        totals = approve_day(
            staff_id,
            work_date,
            approved=data.get("approved", True),
            minutes_override=data.get("minutesOverride"),
            approved_by=data.get("approvedBy"),
            note=data.get("note"),
        )
    except PayrollError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to approve day")

    return jsonify({"ok": True, "day": totals})


@admin_bp.route('/payroll/month-summary', methods=['GET'])
@pin_required('manager')
def payroll_month_summary():
    staff_id = parse_id(request.args.get("staffId"))
    month = request.args.get("month")
    if not staff_id or not month:
        return jsonify({"error": "staffId and month are required."}), 400
    try:
        return jsonify(get_month_summary(staff_id, month))
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to load month summary")


@admin_bp.route('/payroll/month-status', methods=['GET'])
@pin_required('manager')
def payroll_month_status():
    month = request.args.get("month")
    if not month:
        return jsonify({"error": "month is required."}), 400
    staff_id = None
    if request.args.get("staffId"):
        staff_id = parse_id(request.args.get("staffId"))
        if not staff_id:
            return jsonify({"error": "staffId must be a positive integer."}), 400
    try:
        return jsonify({"month": month, "staff": get_month_status(month, staff_id=staff_id)})
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to load month status")


@admin_bp.route('/payroll/month-payment', methods=['POST'])
@pin_required('manager')
def payroll_month_payment():
    data = request.get_json(silent=True) or {}
    staff_id = parse_id(data.get("staffId"))
    month = data.get("month")
    if not staff_id or not month:
        return jsonify({"error": "staffId and month are required."}), 400

    try:
        payment = set_month_paid(
            staff_id,
            month,
            data.get("paid"),
            amount_paid=data.get("amountPaid"),
            reference=data.get("reference"),
            paid_by=data.get("paidBy"),
            paid_at=data.get("paidAt"),
        )
    except PayrollError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to record month payment")

    return jsonify({"ok": True, "payment": payment})


# -------------------- SESSION CORRECTIONS --------------------

@admin_bp.route('/payroll/session', methods=['POST'])
@pin_required('manager')
def payroll_add_session():
    data = request.get_json(silent=True) or {}
    staff_id, work_date = _staff_and_date(data)
    if not staff_id:
        return jsonify({"error": "staffId and workDate are required."}), 400
    try:
        session = add_staff_session(staff_id, work_date, data.get("checkinTime"), data.get("checkoutTime"))
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to add session")
    return jsonify({"session": session}), 201


@admin_bp.route('/payroll/session/<int:session_id>', methods=['PUT'])
@pin_required('manager')
def payroll_update_session(session_id):
    data = request.get_json(silent=True) or {}
    staff_id, work_date = _staff_and_date(data)
    if not staff_id:
        return jsonify({"error": "staffId and workDate are required."}), 400
    try:
        session = update_staff_session(
            session_id, staff_id, work_date, data.get("checkinTime"), data.get("checkoutTime"),
        )
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to update session")
    return jsonify({"session": session})


@admin_bp.route('/payroll/session/<int:session_id>', methods=['DELETE'])
@pin_required('manager')
def payroll_delete_session(session_id):
    staff_id, work_date = _staff_and_date(request.get_json(silent=True) or request.args)
    if not staff_id:
        return jsonify({"error": "staffId and workDate are required."}), 400
    try:
        delete_staff_session(session_id, staff_id, work_date)
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to delete session")
    return '', 204


@admin_bp.route('/payroll/override-and-approve', methods=['POST'])
@pin_required('manager')
def payroll_override_and_approve():
    data = request.get_json(silent=True) or {}
    staff_id, work_date = _staff_and_date(data)
    if not staff_id:
        return jsonify({"error": "staffId and workDate are required."}), 400
    try:
        totals = override_and_approve(
            staff_id,
            work_date,
            overrides=data.get("overrides"),
            additions=data.get("additions"),
            deletions=data.get("deletions"),
            approved_by=data.get("approvedBy"),
            note=data.get("note"),
        )
    except PayrollError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to correct and approve day")
    return jsonify({"ok": True, "day": totals})
