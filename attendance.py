"""
Attendance sessions for the student and staff kiosks.

A session is a row with a check-in time and, once closed, a check-out time.
Sessions left open past the local cutoff (20:30 on the day they were opened)
are closed by close_expired_sessions / close_expired_staff_sessions. Every
close is a guarded UPDATE on "checkout_time IS NULL", so two workers racing
on the same row close it once and only the winner counts it.
"""

from datetime import time, timedelta

import sqlalchemy as sa
from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, IntegrityError

from ingreso.extensions import db
from ingreso.models import Lesson, OfflineEventLog, StaffAttendance, StaffMember, Student, StudentAttendance
from ingreso.utils.constants import (
    ACTIVE_STUDENT_STATUSES,
    AUTO_CHECKOUT_CUTOFF_HOUR,
    AUTO_CHECKOUT_CUTOFF_MINUTE,
    PERMISSION_DENIED_SQLSTATE,
    STUDENT_SEARCH_LIMIT,
)
from ingreso.utils.helpers import (
    as_utc,
    format_utc_iso,
    get_school_timezone,
    local_date_of,
    local_datetime_utc,
    local_day_bounds,
    parse_timestamp,
    utc_now,
)


class AttendanceError(Exception):
    """A check-in or check-out request that cannot be honoured."""


class OfflineEventError(AttendanceError):
    """A queued kiosk event that is malformed and can never be replayed."""


CUTOFF = time(AUTO_CHECKOUT_CUTOFF_HOUR, AUTO_CHECKOUT_CUTOFF_MINUTE)


# -------------------- RECONCILIATION --------------------

def auto_checkout_cutoff(checkin_time, tz=None):
    """UTC instant of the cutoff on the local day a session was opened."""
    tz = tz or get_school_timezone()
    return local_datetime_utc(local_date_of(checkin_time, tz), CUTOFF, tz)


def _due_boundary(now, tz):
    """
    Sessions opened before this UTC instant have already passed their cutoff.

    That is the start of the local day after the last day whose cutoff is
    behind us: today when now is past 20:30 local, yesterday otherwise.
    """
    today = local_date_of(now, tz)
    last_due_day = today if now >= local_datetime_utc(today, CUTOFF, tz) else today - timedelta(days=1)
    return local_datetime_utc(last_due_day + timedelta(days=1), tz=tz)


def _close_expired(model, now=None):
    now = as_utc(now) or utc_now()
    tz = get_school_timezone()
    boundary = _due_boundary(now, tz)

    candidates = (
        db.session.query(model.id, model.checkin_time)
        .filter(model.checkout_time.is_(None), model.checkin_time < boundary)
        .all()
    )

    closed = 0
    for row_id, checkin_time in candidates:
        checkin_time = as_utc(checkin_time)
        # A check-in made after the cutoff closes at its own start, never before it
        checkout_time = max(checkin_time, auto_checkout_cutoff(checkin_time, tz))
        result = db.session.execute(
            sa.update(model)
            .where(model.id == row_id, model.checkout_time.is_(None))
            .values(checkout_time=checkout_time, auto_checkout=True)
            .execution_options(synchronize_session=False)
        )
        closed += result.rowcount or 0
    return closed


def close_expired_sessions(now=None):
    """Close open student sessions whose local cutoff has passed. Does not commit."""
    return _close_expired(StudentAttendance, now)


def close_expired_staff_sessions(now=None):
    """Close open staff sessions whose local cutoff has passed. Does not commit."""
    return _close_expired(StaffAttendance, now)


def is_permission_denied(exc):
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code == PERMISSION_DENIED_SQLSTATE


def _run_closer(closer, label, now):
    try:
        count = closer(now)
        db.session.commit()
        return count
    except DBAPIError as exc:
        db.session.rollback()
        if is_permission_denied(exc):
            current_app.logger.warning(f"Skipping {label} auto-checkout: permission denied ({exc.orig})")
            return 0
        raise


def safely_close_expired_sessions(now=None):
    """
    Run both closers, each in its own transaction.

    Permission errors (a read-only role on a replica, say) are logged and
    skipped so a kiosk request still goes through; anything else propagates.

    Returns:
        tuple: (students_closed, staff_closed)
    """
    students_closed = _run_closer(close_expired_sessions, "student", now)
    staff_closed = _run_closer(close_expired_staff_sessions, "staff", now)
    if students_closed or staff_closed:
        current_app.logger.info(
            f"Auto-checkout closed {students_closed} student and {staff_closed} staff sessions"
        )
    return students_closed, staff_closed


# -------------------- STUDENT KIOSK --------------------

def is_active_student_status(status):
    if status is None:
        return True
    return status.strip().lower() in ACTIVE_STUDENT_STATUSES


def _active_student_filter():
    return sa.or_(
        Student.status.is_(None),
        func.lower(func.trim(Student.status)).in_(sorted(ACTIVE_STUDENT_STATUSES)),
    )


def search_students(query, limit=STUDENT_SEARCH_LIMIT):
    """Case-insensitive substring search over active students with a name."""
    query = (query or "").strip()
    if not query:
        return []
    students = (
        Student.query
        .filter(
            Student.full_name.isnot(None),
            Student.full_name.icontains(query, autoescape=True),
            _active_student_filter(),
        )
        .order_by(Student.full_name.asc())
        .limit(limit)
        .all()
    )
    return [{"id": s.id, "fullName": s.full_name} for s in students]


def lessons_by_level():
    """Lessons grouped by level, each group ordered by sequence."""
    lessons = Lesson.query.order_by(Lesson.level.asc(), Lesson.seq.asc(), Lesson.id.asc()).all()
    groups = {}
    for lesson in lessons:
        groups.setdefault(lesson.level, []).append({
            "id": lesson.id,
            "lesson": lesson.lesson,
            "seq": lesson.seq,
        })
    return [{"level": level, "lessons": items} for level, items in groups.items()]


def get_last_lesson(student_id):
    """Lesson of the student's most recent session, by checkout or else check-in time."""
    row = (
        db.session.query(StudentAttendance, Lesson)
        .join(Lesson, StudentAttendance.lesson_id == Lesson.id)
        .filter(StudentAttendance.student_id == student_id)
        .order_by(
            func.coalesce(StudentAttendance.checkout_time, StudentAttendance.checkin_time).desc(),
            StudentAttendance.id.desc(),
        )
        .first()
    )
    if row is None:
        return None
    attendance, lesson = row
    return {
        "lessonId": lesson.id,
        "lesson": lesson.lesson,
        "level": lesson.level,
        "seq": lesson.seq,
        "attendedAt": format_utc_iso(attendance.checkout_time or attendance.checkin_time),
    }


def get_student_status(student_id):
    student = db.session.get(Student, student_id)
    if student is None:
        raise AttendanceError("Student not found.")
    return {"studentId": student.id, "isActive": is_active_student_status(student.status)}


def validate_lesson_selection(student_id, lesson_id):
    """
    Tell the kiosk whether the chosen lesson needs an explicit confirmation.

    Repeating the last lesson or taking the next one at the same level is the
    normal path; anything else (going back, skipping ahead, switching level)
    asks the student to confirm.
    """
    selected = db.session.get(Lesson, lesson_id)
    if selected is None:
        raise AttendanceError("Lesson not found.")

    last = get_last_lesson(student_id)
    needs_confirmation = False
    if last is not None and last["lessonId"] != selected.id:
        same_level = last["level"].strip().lower() == selected.level.strip().lower()
        needs_confirmation = not (same_level and selected.seq == last["seq"] + 1)

    return {
        "needsConfirmation": needs_confirmation,
        "lastLessonName": last["lesson"] if last else None,
        "lastLessonSequence": last["seq"] if last else None,
        "selectedLessonName": selected.lesson,
        "selectedLessonSequence": selected.seq,
    }


def open_student_session(student_id):
    """The student's open attendance row, if any."""
    return (
        StudentAttendance.query
        .filter_by(student_id=student_id, checkout_time=None)
        .order_by(StudentAttendance.checkin_time.desc())
        .first()
    )


def register_student_checkin(student_id, level, lesson_id, confirm_override=False, now=None):
    """
    Open a session for a student on a lesson.

    Expired sessions are reconciled first so a student who forgot to check out
    yesterday is not blocked today.

    Returns:
        int: id of the new attendance row
    """
    now = as_utc(now) or utc_now()
    safely_close_expired_sessions(now)

    student = db.session.get(Student, student_id)
    if student is None:
        raise AttendanceError("Student not found.")
    if not (student.full_name or "").strip():
        raise AttendanceError("Student has no registered name.")
    if not is_active_student_status(student.status):
        raise AttendanceError("Student account is not active. Please contact the front desk.")

    lesson = db.session.get(Lesson, lesson_id)
    if lesson is None:
        raise AttendanceError("Lesson not found.")
    if lesson.level.strip().lower() != str(level or "").strip().lower():
        raise AttendanceError(f"The selected lesson does not belong to level {level}.")

    if open_student_session(student.id) is not None:
        raise AttendanceError("Student already has an open attendance.")

    attendance = StudentAttendance(
        student_id=student.id,
        lesson_id=lesson.id,
        checkin_time=now,
        confirm_override=bool(confirm_override),
    )
    db.session.add(attendance)
    try:
        db.session.commit()
    except IntegrityError:
        # Lost a race with a concurrent check-in for the same student
        db.session.rollback()
        raise AttendanceError("Student already has an open attendance.")

    current_app.logger.info(f"Student {student.id} checked in to lesson {lesson.id} (attendance {attendance.id})")
    return attendance.id


def register_student_checkout(attendance_id, now=None):
    now = as_utc(now) or utc_now()
    result = db.session.execute(
        sa.update(StudentAttendance)
        .where(StudentAttendance.id == attendance_id, StudentAttendance.checkout_time.is_(None))
        .values(checkout_time=now)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.session.rollback()
        raise AttendanceError("Attendance is already closed or doesn't exist.")
    db.session.commit()
    current_app.logger.info(f"Attendance {attendance_id} checked out")
    return attendance_id


def list_active_attendances(now=None):
    """Open student sessions, after closing the expired ones."""
    safely_close_expired_sessions(now)
    rows = (
        db.session.query(StudentAttendance, Student, Lesson)
        .join(Student, StudentAttendance.student_id == Student.id)
        .outerjoin(Lesson, StudentAttendance.lesson_id == Lesson.id)
        .filter(StudentAttendance.checkout_time.is_(None))
        .order_by(StudentAttendance.checkin_time.asc())
        .all()
    )
    return [
        {
            "attendanceId": attendance.id,
            "studentId": student.id,
            "fullName": student.full_name,
            "lesson": lesson.lesson if lesson else None,
            "level": lesson.level if lesson else None,
            "checkinTime": format_utc_iso(attendance.checkin_time),
        }
        for attendance, student, lesson in rows
    ]


# -------------------- STAFF KIOSK --------------------

def _close_staff_row(row_id, checkin_time, now, automatic=False):
    checkout_time = max(as_utc(checkin_time), now)
    result = db.session.execute(
        sa.update(StaffAttendance)
        .where(StaffAttendance.id == row_id, StaffAttendance.checkout_time.is_(None))
        .values(checkout_time=checkout_time, auto_checkout=automatic)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def open_staff_session(staff_id):
    return (
        StaffAttendance.query
        .filter_by(staff_id=staff_id, checkout_time=None)
        .order_by(StaffAttendance.checkin_time.desc())
        .first()
    )


def register_staff_checkin(staff_id, now=None):
    """
    Open a shift for a staff member.

    Shifts left open on an earlier local day are closed first, so one forgotten
    check-out does not lock the person out.
    """
    now = as_utc(now) or utc_now()

    staff = db.session.get(StaffMember, staff_id)
    if staff is None:
        raise AttendanceError("Staff member not found.")
    if not (staff.full_name or "").strip():
        raise AttendanceError("Staff member has no registered name.")
    if not staff.active:
        raise AttendanceError("Staff member is not active.")

    day_start, _ = local_day_bounds(local_date_of(now))
    stale = (
        db.session.query(StaffAttendance.id, StaffAttendance.checkin_time)
        .filter(
            StaffAttendance.staff_id == staff.id,
            StaffAttendance.checkout_time.is_(None),
            StaffAttendance.checkin_time < day_start,
        )
        .all()
    )
    for row_id, checkin_time in stale:
        _close_staff_row(row_id, checkin_time, now, automatic=True)

    if open_staff_session(staff.id) is not None:
        db.session.rollback()
        raise AttendanceError("Staff member already has an open attendance.")

    attendance = StaffAttendance(staff_id=staff.id, checkin_time=now)
    db.session.add(attendance)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise AttendanceError("Staff member already has an open attendance.")

    current_app.logger.info(f"Staff {staff.id} checked in (attendance {attendance.id})")
    return attendance.id


def register_staff_checkout(attendance_id, now=None):
    now = as_utc(now) or utc_now()
    row = db.session.get(StaffAttendance, attendance_id)
    if row is None or row.checkout_time is not None:
        raise AttendanceError("Attendance is already closed or doesn't exist.")
    if not _close_staff_row(row.id, row.checkin_time, now):
        db.session.rollback()
        raise AttendanceError("Attendance is already closed or doesn't exist.")
    db.session.commit()
    current_app.logger.info(f"Staff attendance {attendance_id} checked out")
    return attendance_id


def list_active_staff_attendances():
    rows = (
        db.session.query(StaffAttendance, StaffMember)
        .join(StaffMember, StaffAttendance.staff_id == StaffMember.id)
        .filter(StaffAttendance.checkout_time.is_(None))
        .order_by(StaffAttendance.checkin_time.asc())
        .all()
    )
    return [
        {
            "attendanceId": attendance.id,
            "staffId": member.id,
            "fullName": member.full_name,
            "checkinTime": format_utc_iso(attendance.checkin_time),
        }
        for attendance, member in rows
    ]


# -------------------- OFFLINE QUEUE REPLAY --------------------

def _event_id(payload, key):
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise OfflineEventError(f"{key} must be a positive integer.")
    if parsed <= 0:
        raise OfflineEventError(f"{key} must be a positive integer.")
    return parsed


def _event_time(payload, key):
    parsed = parse_timestamp(payload.get(key))
    if parsed is None:
        raise OfflineEventError(f"{key} must be an ISO-8601 timestamp.")
    return parsed


def _replay_target(model, attendance_id, owner_field, owner_id, open_lookup):
    """The row a queued check-out refers to: its own id first, else the owner's open session."""
    if attendance_id is None and owner_id is None:
        raise OfflineEventError(f"attendance_id or {owner_field} is required.")
    if attendance_id is not None:
        row = db.session.get(model, attendance_id)
        if row is not None and owner_id in (None, getattr(row, owner_field)):
            return row
    if owner_id is not None:
        row = open_lookup(owner_id)
        if row is not None:
            return row
    raise AttendanceError("No open attendance found to close.")


def _replay_close(model, row, checkout_time):
    """
    Close a session at the time the kiosk recorded while offline.

    A session the nightly auto-checkout closed meanwhile takes the kiosk's time
    instead of the cutoff; one already closed at a kiosk is left as it is.
    """
    checkout_time = max(as_utc(row.checkin_time), checkout_time)
    db.session.execute(
        sa.update(model)
        .where(model.id == row.id, sa.or_(model.checkout_time.is_(None), model.auto_checkout.is_(True)))
        .values(checkout_time=checkout_time, auto_checkout=False)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return row.id


def _replay_student_checkin(payload):
    student_id = _event_id(payload, "student_id")
    lesson_id = _event_id(payload, "lesson_id")
    if student_id is None or lesson_id is None:
        raise OfflineEventError("student_id and lesson_id are required.")
    checkin_time = _event_time(payload, "checkin_time")
    lesson = db.session.get(Lesson, lesson_id)
    if lesson is None:
        raise AttendanceError("Lesson not found.")
    return register_student_checkin(
        student_id,
        lesson.level,
        lesson.id,
        confirm_override=payload.get("confirm_override") is True,
        now=checkin_time,
    )


def _replay_student_checkout(payload):
    checkout_time = _event_time(payload, "checkout_time")
    row = _replay_target(
        StudentAttendance,
        _event_id(payload, "attendance_id"),
        "student_id",
        _event_id(payload, "student_id"),
        open_student_session,
    )
    return _replay_close(StudentAttendance, row, checkout_time)


def _replay_staff_checkin(payload):
    staff_id = _event_id(payload, "staff_id")
    if staff_id is None:
        raise OfflineEventError("staff_id is required.")
    return register_staff_checkin(staff_id, now=_event_time(payload, "checkin_time"))


def _replay_staff_checkout(payload):
    checkout_time = _event_time(payload, "checkout_time")
    row = _replay_target(
        StaffAttendance,
        _event_id(payload, "attendance_id"),
        "staff_id",
        _event_id(payload, "staff_id"),
        open_staff_session,
    )
    return _replay_close(StaffAttendance, row, checkout_time)


OFFLINE_EVENT_REPLAYERS = {
    "student_checkin": _replay_student_checkin,
    "student_checkout": _replay_student_checkout,
    "staff_checkin": _replay_staff_checkin,
    "staff_checkout": _replay_staff_checkout,
}


def _log_offline_event(event_uuid, kind, success, error_text):
    entry = db.session.get(OfflineEventLog, event_uuid)
    if entry is None:
        entry = OfflineEventLog(event_uuid=event_uuid)
        db.session.add(entry)
    entry.kind = kind
    entry.success = success
    entry.error_text = error_text
    entry.processed_at = utc_now()
    try:
        db.session.commit()
    except IntegrityError:
        # The same event arrived twice at once
        db.session.rollback()
        entry = db.session.get(OfflineEventLog, event_uuid)
        entry.kind = kind
        entry.success = entry.success or success
        entry.error_text = None if entry.success else error_text
        entry.processed_at = utc_now()
        db.session.commit()
    return entry


def replay_offline_event(event_uuid, kind, payload):
    """
    Apply one event the kiosk queued while it was offline.

    Each event carries a client-generated UUID; once an event has been applied
    successfully, sending it again is acknowledged without touching the
    sessions. Failures are recorded too, so the kiosk can retry them later.

    Args:
        event_uuid: the kiosk's id for the event
        kind: student_checkin, student_checkout, staff_checkin or staff_checkout
        payload: snake_case fields of the original action, with the times
            (checkin_time / checkout_time) the kiosk recorded

    Returns:
        dict: {"status": "ok", "duplicate": bool, "attendanceId": int or None}

    Raises:
        OfflineEventError: malformed event or payload
        AttendanceError: the event conflicts with the current sessions
    """
    event_uuid = event_uuid.strip() if isinstance(event_uuid, str) else ""
    if not event_uuid or len(event_uuid) > 64 or kind not in OFFLINE_EVENT_REPLAYERS:
        raise OfflineEventError("The event needs an id and a known kind.")

    logged = db.session.get(OfflineEventLog, event_uuid)
    if logged is not None and logged.success:
        current_app.logger.info(f"Offline event {event_uuid} ({kind}) already applied")
        return {"status": "ok", "duplicate": True, "attendanceId": None}

    try:
        if not isinstance(payload, dict):
            raise OfflineEventError("payload must be an object.")
        attendance_id = OFFLINE_EVENT_REPLAYERS[kind](payload)
    except AttendanceError as exc:
        db.session.rollback()
        _log_offline_event(event_uuid, kind, False, str(exc))
        current_app.logger.warning(f"Offline event {event_uuid} ({kind}) failed: {exc}")
        raise

    _log_offline_event(event_uuid, kind, True, None)
    current_app.logger.info(f"Offline event {event_uuid} ({kind}) applied to attendance {attendance_id}")
    return {"status": "ok", "duplicate": False, "attendanceId": attendance_id}
