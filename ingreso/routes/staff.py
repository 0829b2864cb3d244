"""
Staff kiosk and personnel management API.

Shift check-in/out sits behind the staff PIN; editing the staff roster needs
the manager PIN.
"""

from decimal import Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from attendance import (
    AttendanceError,
    list_active_staff_attendances,
    register_staff_checkin,
    register_staff_checkout,
)
from ingreso.auth import pin_required
from ingreso.extensions import db, limiter
from ingreso.models import StaffMember
from ingreso.routes.checkin import database_error, parse_id

staff_bp = Blueprint('staff', __name__, url_prefix='/api')


# -------------------- SHIFTS --------------------

@staff_bp.route('/staff/check-in', methods=['POST'])
@pin_required('staff')
@limiter.limit("30 per minute")
def staff_checkin():
    staff_id = parse_id((request.get_json(silent=True) or {}).get("staffId"))
    if not staff_id:
        return jsonify({"error": "staffId is required."}), 400

    try:
        attendance_id = register_staff_checkin(staff_id)
    except AttendanceError as e:
        current_app.logger.info(f"Staff check-in rejected for {staff_id}: {e}")
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to register staff check-in")

    return jsonify({"ok": True, "attendanceId": attendance_id}), 201


@staff_bp.route('/staff/check-out', methods=['POST'])
@pin_required('staff')
@limiter.limit("30 per minute")
def staff_checkout():
    attendance_id = parse_id((request.get_json(silent=True) or {}).get("attendanceId"))
    if not attendance_id:
        return jsonify({"error": "attendanceId is required."}), 400

    try:
        register_staff_checkout(attendance_id)
    except AttendanceError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to register staff check-out")

    return jsonify({"ok": True, "attendanceId": attendance_id})


@staff_bp.route('/staff/active', methods=['GET'])
@pin_required('staff')
def active_staff():
    try:
        return jsonify({"attendances": list_active_staff_attendances()})
    except SQLAlchemyError:
        return database_error("Failed to load active staff")


@staff_bp.route('/staff/roster', methods=['GET'])
@pin_required('staff')
def staff_roster():
    """Active staff names for the kiosk picker."""
    try:
        members = (
            StaffMember.query
            .filter(StaffMember.active.is_(True), StaffMember.full_name.isnot(None))
            .order_by(StaffMember.full_name.asc())
            .all()
        )
    except SQLAlchemyError:
        return database_error("Failed to load staff roster")
    return jsonify({"staff": [{"id": m.id, "fullName": m.full_name} for m in members]})


# -------------------- PERSONNEL --------------------

def _decimal(value, field):
    if value is None or value == "":
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field} must be a number.")
    if not parsed.is_finite() or parsed < 0:
        raise ValueError(f"{field} must be a positive number.")
    return parsed


def _apply_staff_fields(member, data):
    if "fullName" in data:
        name = (data.get("fullName") or "").strip()
        if not name:
            raise ValueError("fullName cannot be empty.")
        member.full_name = name
    if "role" in data:
        member.role = (data.get("role") or "").strip() or None
    if "active" in data:
        member.active = bool(data.get("active"))
    if "hourlyWage" in data:
        member.hourly_wage = _decimal(data.get("hourlyWage"), "hourlyWage")
    if "weeklyHours" in data:
        member.weekly_hours = _decimal(data.get("weeklyHours"), "weeklyHours")


@staff_bp.route('/staff-members', methods=['GET'])
@pin_required('manager')
def list_staff_members():
    try:
        members = StaffMember.query.order_by(StaffMember.full_name.asc()).all()
    except SQLAlchemyError:
        return database_error("Failed to load staff members")
    return jsonify({"staff": [m.to_dict() for m in members]})


@staff_bp.route('/staff-members', methods=['POST'])
@pin_required('manager')
def create_staff_member():
    data = request.get_json(silent=True) or {}
    if not (data.get("fullName") or "").strip():
        return jsonify({"error": "fullName is required."}), 400

    member = StaffMember(active=True)
    try:
        _apply_staff_fields(member, data)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    try:
        db.session.add(member)
        db.session.commit()
    except SQLAlchemyError:
        return database_error("Failed to create staff member")

    current_app.logger.info(f"Staff member {member.id} created")
    return jsonify(member.to_dict()), 201


@staff_bp.route('/staff-members/<int:staff_id>', methods=['PATCH', 'PUT'])
@pin_required('manager')
def update_staff_member(staff_id):
    member = db.session.get(StaffMember, staff_id)
    if member is None:
        return jsonify({"error": "Staff member not found."}), 404

    try:
        _apply_staff_fields(member, request.get_json(silent=True) or {})
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400

    try:
        db.session.commit()
    except SQLAlchemyError:
        return database_error("Failed to update staff member")

    current_app.logger.info(f"Staff member {member.id} updated")
    return jsonify(member.to_dict())
