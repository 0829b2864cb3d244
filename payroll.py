from calendar import monthrange
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from flask import current_app

from ingreso.extensions import db
from ingreso.models import PayrollDayApproval, PayrollMonthPayment, StaffAttendance, StaffMember, _utc_now
from ingreso.utils.helpers import (
    as_utc,
    format_utc_iso,
    local_date_of,
    local_day_bounds,
    parse_date,
    parse_timestamp,
)


class PayrollError(ValueError):
    """Invalid payroll request (unknown staff member, bad date or minutes)."""


def session_minutes(checkin_time, checkout_time):
    """
    Whole minutes between check-in and check-out.

    Open sessions count as zero: nothing is paid until the shift is closed,
    either at the kiosk or by the nightly auto-checkout.
    """
    if checkin_time is None or checkout_time is None:
        return 0
    seconds = (as_utc(checkout_time) - as_utc(checkin_time)).total_seconds()
    return max(0, int(seconds // 60))


def round_minutes_to_hours(minutes):
    return round((minutes or 0) / 60.0, 2)


def _require_staff(staff_id):
    staff = db.session.get(StaffMember, staff_id)
    if staff is None:
        raise PayrollError("Staff member not found.")
    return staff


def _require_date(work_date):
    parsed = parse_date(work_date)
    if parsed is None:
        raise PayrollError("workDate must be a date in YYYY-MM-DD format.")
    return parsed


def _sessions_between(staff_id, start, end):
    return (
        StaffAttendance.query
        .filter(
            StaffAttendance.staff_id == staff_id,
            StaffAttendance.checkin_time >= start,
            StaffAttendance.checkin_time < end,
        )
        .order_by(StaffAttendance.checkin_time.asc())
        .all()
    )


def _session_payload(row):
    return {
        "id": row.id,
        "checkinTime": format_utc_iso(row.checkin_time),
        "checkoutTime": format_utc_iso(row.checkout_time),
        "minutes": session_minutes(row.checkin_time, row.checkout_time),
        "autoCheckout": bool(row.auto_checkout),
        "open": row.checkout_time is None,
    }


def get_day_sessions(staff_id, work_date):
    """Sessions of a staff member whose check-in falls on the given local date."""
    _require_staff(staff_id)
    work_date = _require_date(work_date)
    start, end = local_day_bounds(work_date)
    return [_session_payload(row) for row in _sessions_between(staff_id, start, end)]


def _totals(staff, work_date, sessions, approval):
    worked = sum(session_minutes(s.checkin_time, s.checkout_time) for s in sessions)
    approved = bool(approval and approval.approved)
    approved_minutes = None
    if approved:
        approved_minutes = approval.minutes_override if approval.minutes_override is not None else worked
    amount = None
    if approved_minutes is not None and staff.hourly_wage is not None:
        amount = round(float(staff.hourly_wage) * approved_minutes / 60.0, 2)
    return {
        "staffId": staff.id,
        "workDate": work_date.isoformat(),
        "workedMinutes": worked,
        "workedHours": round_minutes_to_hours(worked),
        "openSessions": sum(1 for s in sessions if s.checkout_time is None),
        "approved": approved,
        "approvedMinutes": approved_minutes,
        "approvedAmount": amount,
        "approvedBy": approval.approved_by if approval else None,
        "note": approval.note if approval else None,
    }


def get_day_totals(staff_id, work_date):
    staff = _require_staff(staff_id)
    work_date = _require_date(work_date)
    start, end = local_day_bounds(work_date)
    approval = PayrollDayApproval.query.filter_by(staff_id=staff.id, work_date=work_date).first()
    return _totals(staff, work_date, _sessions_between(staff.id, start, end), approval)


# -------------------- APPROVALS --------------------

def _whole_minutes(value):
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise PayrollError("minutesOverride must be a whole number of minutes.")
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise PayrollError("minutesOverride must be a whole number of minutes.")
    if minutes < 0 or minutes > 24 * 60:
        raise PayrollError("minutesOverride must be between 0 and 1440.")
    return minutes


def _upsert_approval(staff, work_date, approved, minutes_override, approved_by, note):
    approval = PayrollDayApproval.query.filter_by(staff_id=staff.id, work_date=work_date).first()
    if approval is None:
        approval = PayrollDayApproval(staff_id=staff.id, work_date=work_date)
        db.session.add(approval)
    approval.approved = approved
    approval.minutes_override = minutes_override
    approval.approved_by = (approved_by or "").strip() or None
    approval.note = (note or "").strip() or None
    approval.approved_at = _utc_now()
    return approval


def approve_day(staff_id, work_date, approved=True, minutes_override=None, approved_by=None, note=None):
    """
    Record (or revoke) the manager's approval of a staff member's day.

    One approval row per staff member and date; calling again overwrites it.
    """
    staff = _require_staff(staff_id)
    work_date = _require_date(work_date)
    if not isinstance(approved, bool):
        raise PayrollError("approved must be true or false.")
    if minutes_override is not None:
        minutes_override = _whole_minutes(minutes_override)

    _upsert_approval(staff, work_date, approved, minutes_override, approved_by, note)
    db.session.commit()

    action = "approved" if approved else "revoked"
    current_app.logger.info(f"Payroll day {work_date} {action} for staff {staff.id}")
    return get_day_totals(staff.id, work_date)


# -------------------- SESSION CORRECTIONS --------------------

def _session_id(value):
    if isinstance(value, bool):
        value = None
    try:
        session_id = int(value)
    except (TypeError, ValueError):
        raise PayrollError("sessionId must be a positive integer.")
    if session_id <= 0:
        raise PayrollError("sessionId must be a positive integer.")
    return session_id


def _session_times(work_date, checkin_time, checkout_time):
    checkin = parse_timestamp(checkin_time)
    checkout = parse_timestamp(checkout_time)
    if checkin is None or checkout is None:
        raise PayrollError("checkinTime and checkoutTime must be valid timestamps.")
    if checkout <= checkin:
        raise PayrollError("checkoutTime must be after checkinTime.")
    if local_date_of(checkin) != work_date or local_date_of(checkout) != work_date:
        raise PayrollError("Sessions must start and end on the selected day.")
    return checkin, checkout


def _assert_no_overlap(staff_id, work_date, checkin, checkout, ignore_id=None):
    start, end = local_day_bounds(work_date)
    for row in _sessions_between(staff_id, start, end):
        if row.id == ignore_id:
            continue
        # An open session runs until whatever the new one claims
        row_end = as_utc(row.checkout_time) or checkout
        if checkout > as_utc(row.checkin_time) and checkin < row_end:
            raise PayrollError("The session overlaps another session on this day.")


def _day_session(staff, work_date, session_id):
    row = db.session.get(StaffAttendance, _session_id(session_id))
    if row is None or row.staff_id != staff.id or local_date_of(row.checkin_time) != work_date:
        raise PayrollError("Session not found for this staff member and day.")
    return row


def _add_session(staff, work_date, checkin_time, checkout_time):
    checkin, checkout = _session_times(work_date, checkin_time, checkout_time)
    _assert_no_overlap(staff.id, work_date, checkin, checkout)
    row = StaffAttendance(staff_id=staff.id, checkin_time=checkin, checkout_time=checkout, auto_checkout=False)
    db.session.add(row)
    db.session.flush()
    return row


def _edit_session(staff, work_date, session_id, checkin_time, checkout_time):
    row = _day_session(staff, work_date, session_id)
    checkin, checkout = _session_times(work_date, checkin_time, checkout_time)
    _assert_no_overlap(staff.id, work_date, checkin, checkout, ignore_id=row.id)
    row.checkin_time = checkin
    row.checkout_time = checkout
    row.auto_checkout = False
    return row


def _delete_session(staff, work_date, session_id):
    row = _day_session(staff, work_date, session_id)
    db.session.delete(row)
    db.session.flush()


def add_staff_session(staff_id, work_date, checkin_time, checkout_time):
    """Add a closed session the kiosk never recorded."""
    staff = _require_staff(staff_id)
    work_date = _require_date(work_date)
    try:
        row = _add_session(staff, work_date, checkin_time, checkout_time)
        db.session.commit()
    except PayrollError:
        db.session.rollback()
        raise
    current_app.logger.info(f"Payroll session {row.id} added for staff {staff.id} on {work_date}")
    return _session_payload(row)


def update_staff_session(session_id, staff_id, work_date, checkin_time, checkout_time):
    """Correct the times of a session; an open session is closed by the edit."""
    staff = _require_staff(staff_id)
    work_date = _require_date(work_date)
    try:
        row = _edit_session(staff, work_date, session_id, checkin_time, checkout_time)
        db.session.commit()
    except PayrollError:
        db.session.rollback()
        raise
    current_app.logger.info(f"Payroll session {row.id} edited for staff {staff.id} on {work_date}")
    return _session_payload(row)


def delete_staff_session(session_id, staff_id, work_date):
    staff = _require_staff(staff_id)
    work_date = _require_date(work_date)
    try:
        _delete_session(staff, work_date, session_id)
        db.session.commit()
    except PayrollError:
        db.session.rollback()
        raise
    current_app.logger.info(f"Payroll session {session_id} deleted for staff {staff.id} on {work_date}")


def _entries(value, name):
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise PayrollError(f"{name} must be a list.")
    return value


def _times_entry(entry, name):
    if not isinstance(entry, dict):
        raise PayrollError(f"Each entry of {name} must be an object.")
    return entry.get("checkinTime"), entry.get("checkoutTime")


def override_and_approve(staff_id, work_date, overrides=None, additions=None, deletions=None,
                         approved_by=None, note=None):
    """
    Apply a manager's corrections to a day and approve it, all or nothing.

    Deletions run first, then edits of existing sessions, then new sessions.
    The day is approved at the minutes the corrected sessions add up to.

    Args:
        overrides: [{"sessionId", "checkinTime", "checkoutTime"}, ...]
        additions: [{"checkinTime", "checkoutTime"}, ...]
        deletions: [sessionId, ...]

    Returns:
        dict: the day's totals after approval
    """
    staff = _require_staff(staff_id)
    work_date = _require_date(work_date)
    overrides = _entries(overrides, "overrides")
    additions = _entries(additions, "additions")
    deletions = _entries(deletions, "deletions")
    if not (overrides or additions or deletions):
        raise PayrollError("Send at least one session change to apply.")

    try:
        for session_id in deletions:
            _delete_session(staff, work_date, session_id)
        for entry in overrides:
            checkin_time, checkout_time = _times_entry(entry, "overrides")
            _edit_session(staff, work_date, entry.get("sessionId"), checkin_time, checkout_time)
        for entry in additions:
            checkin_time, checkout_time = _times_entry(entry, "additions")
            _add_session(staff, work_date, checkin_time, checkout_time)
        _upsert_approval(staff, work_date, True, None, approved_by, note)
        db.session.commit()
    except PayrollError:
        db.session.rollback()
        raise

    current_app.logger.info(
        f"Payroll day {work_date} corrected and approved for staff {staff.id}: "
        f"{len(deletions)} deleted, {len(overrides)} edited, {len(additions)} added"
    )
    return get_day_totals(staff.id, work_date)


# -------------------- MONTHS --------------------

def _require_month(month):
    """First day of a month given as YYYY-MM (or YYYY-MM-01)."""
    text = month.strip() if isinstance(month, str) else ""
    for fmt in ("%Y-%m", "%Y-%m-%d"):
        try:
            first_day = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        if first_day.day == 1:
            return first_day
    raise PayrollError("month must be in YYYY-MM format.")


def _payment_fields(payment):
    if payment is None:
        return {"paid": False, "paidAt": None, "amountPaid": None, "reference": None, "paidBy": None}
    return {
        "paid": bool(payment.paid),
        "paidAt": format_utc_iso(payment.paid_at),
        "amountPaid": float(payment.amount_paid) if payment.amount_paid is not None else None,
        "reference": payment.reference,
        "paidBy": payment.paid_by,
    }


def _month_payment(staff_id, first_day):
    return PayrollMonthPayment.query.filter_by(staff_id=staff_id, month=first_day).first()


def get_month_summary(staff_id, month):
    """
    Per-day totals for one staff member over a calendar month ("YYYY-MM").

    Days appear when they have at least one session or an approval row.
    """
    staff = _require_staff(staff_id)
    first_day = _require_month(month)
    last_day = date(first_day.year, first_day.month, monthrange(first_day.year, first_day.month)[1])

    start, _ = local_day_bounds(first_day)
    _, end = local_day_bounds(last_day)

    sessions_by_day = {}
    for row in _sessions_between(staff.id, start, end):
        sessions_by_day.setdefault(local_date_of(row.checkin_time), []).append(row)

    approvals = {
        a.work_date: a
        for a in PayrollDayApproval.query.filter(
            PayrollDayApproval.staff_id == staff.id,
            PayrollDayApproval.work_date >= first_day,
            PayrollDayApproval.work_date <= last_day,
        ).all()
    }

    days = [
        _totals(staff, day, sessions_by_day.get(day, []), approvals.get(day))
        for day in sorted(set(sessions_by_day) | set(approvals))
    ]
    worked = sum(d["workedMinutes"] for d in days)
    approved = sum(d["approvedMinutes"] or 0 for d in days)
    amounts = [d["approvedAmount"] for d in days if d["approvedAmount"] is not None]
    return {
        "staffId": staff.id,
        "fullName": staff.full_name,
        "month": first_day.strftime("%Y-%m"),
        "days": days,
        "workedMinutes": worked,
        "workedHours": round_minutes_to_hours(worked),
        "approvedDays": sum(1 for d in days if d["approved"]),
        "approvedMinutes": approved,
        "approvedHours": round_minutes_to_hours(approved),
        "approvedAmount": round(sum(amounts), 2) if amounts else None,
        "pendingDays": sum(1 for d in days if not d["approved"]),
        **_payment_fields(_month_payment(staff.id, first_day)),
    }


def get_month_status(month, staff_id=None):
    """
    Approval and payment status of a month, one row per staff member.

    Inactive staff only appear when they have activity or a payment that month.
    """
    first_day = _require_month(month)
    query = StaffMember.query.order_by(StaffMember.full_name.asc(), StaffMember.id.asc())
    if staff_id is not None:
        query = query.filter(StaffMember.id == _require_staff(staff_id).id)

    rows = []
    for staff in query.all():
        summary = get_month_summary(staff.id, first_day.strftime("%Y-%m"))
        if staff_id is None and not (staff.active or summary["days"] or summary["paid"]):
            continue
        summary.pop("days")
        rows.append(summary)
    return rows


def _amount(value):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise PayrollError("amountPaid must be a number.")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise PayrollError("amountPaid must be a number.")
    if not amount.is_finite() or amount < 0:
        raise PayrollError("amountPaid must be a positive number.")
    return amount.quantize(Decimal("0.01"))


def set_month_paid(staff_id, month, paid, amount_paid=None, reference=None, paid_by=None, paid_at=None):
    """
    Mark a staff member's month as paid (or unpaid).

    Marking a month unpaid clears the payment details. A paid month without an
    explicit paidAt is stamped with the current time.
    """
    staff = _require_staff(staff_id)
    first_day = _require_month(month)
    if not isinstance(paid, bool):
        raise PayrollError("paid must be true or false.")

    amount = paid_time = None
    if paid:
        amount = _amount(amount_paid)
        if paid_at in (None, ""):
            paid_time = _utc_now()
        else:
            paid_time = parse_timestamp(paid_at)
            if paid_time is None:
                raise PayrollError("paidAt must be a date or timestamp.")

    payment = _month_payment(staff.id, first_day)
    if payment is None:
        payment = PayrollMonthPayment(staff_id=staff.id, month=first_day)
        db.session.add(payment)
    payment.paid = paid
    payment.paid_at = paid_time
    payment.amount_paid = amount
    payment.reference = ((reference or "").strip() or None) if paid else None
    payment.paid_by = ((paid_by or "").strip() or None) if paid else None
    db.session.commit()

    state = "paid" if paid else "unpaid"
    current_app.logger.info(f"Payroll month {first_day:%Y-%m} marked {state} for staff {staff.id}")
    return {"staffId": staff.id, "month": first_day.strftime("%Y-%m"), **_payment_fields(payment)}
