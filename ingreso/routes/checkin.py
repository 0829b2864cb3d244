"""
Student kiosk API.

Search, lesson picker, check-in and check-out for the front-desk kiosk, and the
replay endpoint for actions the kiosks queued while offline. The student
endpoints are open: the kiosk runs unattended and students do not hold PINs.
"""

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from attendance import (
    AttendanceError,
    OfflineEventError,
    get_last_lesson,
    get_student_status,
    lessons_by_level,
    list_active_attendances,
    register_student_checkin,
    register_student_checkout,
    replay_offline_event,
    search_students,
    validate_lesson_selection,
)
from ingreso.auth import has_valid_pin_session
from ingreso.extensions import db, limiter
from ingreso.models import PinScope

checkin_bp = Blueprint('checkin', __name__, url_prefix='/api')


def parse_id(value):
    """Return a positive integer id, or None."""
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def database_error(message):
    db.session.rollback()
    current_app.logger.error(message, exc_info=True)
    return jsonify({"error": message}), 500


@checkin_bp.route('/students', methods=['GET'])
def student_search():
    try:
        return jsonify({"students": search_students(request.args.get('q', ''))})
    except SQLAlchemyError:
        return database_error("Failed to search students")


@checkin_bp.route('/lessons', methods=['GET'])
def lesson_catalog():
    try:
        return jsonify({"levels": lessons_by_level()})
    except SQLAlchemyError:
        return database_error("Failed to load lessons")


@checkin_bp.route('/students/<int:student_id>/last-lesson', methods=['GET'])
def last_lesson(student_id):
    try:
        return jsonify({"lastLesson": get_last_lesson(student_id)})
    except SQLAlchemyError:
        return database_error("Failed to load last lesson")


@checkin_bp.route('/check-in/validate', methods=['POST'])
def validate_checkin():
    data = request.get_json(silent=True) or {}
    student_id = parse_id(data.get("studentId"))
    lesson_id = parse_id(data.get("lessonId"))
    if not student_id or not lesson_id:
        return jsonify({"error": "studentId and lessonId are required."}), 400

    try:
        status = get_student_status(student_id)
        if not status["isActive"]:
            return jsonify({
                "isActive": False,
                "needsConfirmation": False,
                "message": "Your account needs attention. Please contact the front desk.",
            })
        validation = validate_lesson_selection(student_id, lesson_id)
    except AttendanceError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to validate lesson selection")

    return jsonify({"isActive": True, **validation})


@checkin_bp.route('/check-in', methods=['POST'])
@limiter.limit("30 per minute")
def student_checkin():
    data = request.get_json(silent=True) or {}
    student_id = parse_id(data.get("studentId"))
    lesson_id = parse_id(data.get("lessonId"))
    level = (data.get("level") or "").strip() if isinstance(data.get("level"), str) else ""
    if not student_id or not lesson_id or not level:
        return jsonify({"error": "studentId, level and lessonId are required."}), 400

    try:
        attendance_id = register_student_checkin(
            student_id, level, lesson_id, confirm_override=bool(data.get("confirmOverride"))
        )
    except AttendanceError as e:
        current_app.logger.info(f"Check-in rejected for student {student_id}: {e}")
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to register check-in")

    return jsonify({"ok": True, "attendanceId": attendance_id}), 201


@checkin_bp.route('/check-out', methods=['POST'])
@limiter.limit("30 per minute")
def student_checkout():
    data = request.get_json(silent=True) or {}
    attendance_id = parse_id(data.get("attendanceId"))
    if not attendance_id:
        return jsonify({"error": "attendanceId is required."}), 400

    try:
        register_student_checkout(attendance_id)
    except AttendanceError as e:
        return jsonify({"error": str(e)}), 400
    except SQLAlchemyError:
        return database_error("Failed to register check-out")

    return jsonify({"ok": True, "attendanceId": attendance_id})


@checkin_bp.route('/attendance/active', methods=['GET'])
def active_attendances():
    try:
        return jsonify({"attendances": list_active_attendances()})
    except SQLAlchemyError:
        return database_error("Failed to load active attendances")


@checkin_bp.route('/offline-sync', methods=['POST'])
def offline_sync():
    """Replay one queued kiosk event; safe to call again with the same id."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"status": "error", "error": "Could not read the queued event."}), 400

    kind = data.get("kind")
    # Staff events need the same PIN as the live staff kiosk
    if isinstance(kind, str) and kind.startswith("staff_") and not has_valid_pin_session(PinScope.STAFF):
        return jsonify({"status": "error", "error": "PIN required", "scope": PinScope.STAFF.value}), 401

    try:
        result = replay_offline_event(data.get("id"), kind, data.get("payload") or {})
    except OfflineEventError as e:
        return jsonify({"status": "error", "error": str(e)}), 400
    except AttendanceError as e:
        return jsonify({"status": "error", "error": str(e)}), 409
    except SQLAlchemyError:
        return database_error("Failed to replay offline event")

    return jsonify(result)
