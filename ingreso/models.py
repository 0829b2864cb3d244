"""
Database models for Ingreso Rápido.

All SQLAlchemy models are defined here with proper relationships and properties.
Times are stored as UTC in the database; local-day logic lives in
attendance.py and payroll.py.
"""

from datetime import datetime, timezone
import enum

from ingreso.extensions import db


def _utc_now():
    """Helper function for timezone-aware datetime defaults in SQLAlchemy models."""
    return datetime.now(timezone.utc)


class PinScope(enum.Enum):
    """Access scopes, each gated by its own shared PIN."""
    STAFF = 'staff'
    MANAGER = 'manager'

    @classmethod
    def parse(cls, value):
        """Return the scope for a raw value, or None when it is not a known scope."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


# -------------------- STUDENTS AND LESSONS --------------------

class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(200), nullable=True)
    # NULL, "activo", "activa" and "active" may check in; anything else is on hold
    status = db.Column(db.String(30), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utc_now, nullable=False)

    attendances = db.relationship('StudentAttendance', backref='student', lazy='dynamic')

    def __repr__(self):
        return f'<Student {self.id} {self.full_name}>'


class Lesson(db.Model):
    __tablename__ = 'lessons'

    id = db.Column(db.Integer, primary_key=True)
    lesson = db.Column(db.String(200), nullable=False)
    level = db.Column(db.String(20), nullable=False)
    seq = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.Index('ix_lessons_level_seq', 'level', 'seq'),
    )

    def __repr__(self):
        return f'<Lesson {self.level}#{self.seq} {self.lesson}>'


class StudentAttendance(db.Model):
    """
    One kiosk visit of a student.

    A row with checkout_time NULL is an open session. Open sessions that outlive
    the local cutoff are closed by the reconciliation job and flagged with
    auto_checkout.
    """
    __tablename__ = 'student_attendance'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    lesson_id = db.Column(db.Integer, db.ForeignKey('lessons.id'), nullable=True)
    checkin_time = db.Column(db.DateTime(timezone=True), default=_utc_now, nullable=False)
    checkout_time = db.Column(db.DateTime(timezone=True), nullable=True)
    confirm_override = db.Column(db.Boolean, default=False, nullable=False)
    auto_checkout = db.Column(db.Boolean, default=False, nullable=False)

    lesson = db.relationship('Lesson')

    __table_args__ = (
        db.Index('ix_student_attendance_student_id', 'student_id'),
        db.Index('ix_student_attendance_open', 'checkout_time'),
        # At most one open session per student
        db.Index(
            'uq_student_attendance_one_open', 'student_id', unique=True,
            postgresql_where=db.text('checkout_time IS NULL'),
            sqlite_where=db.text('checkout_time IS NULL'),
        ),
    )

    @property
    def is_open(self):
        return self.checkout_time is None

    def __repr__(self):
        state = "open" if self.is_open else "closed"
        return f'<StudentAttendance {self.id} student={self.student_id} {state}>'


# -------------------- STAFF --------------------

class StaffMember(db.Model):
    __tablename__ = 'staff_members'

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(100), nullable=True)
    active = db.Column(db.Boolean, default=True, nullable=False)
    hourly_wage = db.Column(db.Numeric(10, 2), nullable=True)
    weekly_hours = db.Column(db.Numeric(6, 2), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utc_now, nullable=False)

    attendances = db.relationship('StaffAttendance', backref='staff_member', lazy='dynamic')

    def to_dict(self):
        return {
            "id": self.id,
            "fullName": self.full_name,
            "role": self.role,
            "active": bool(self.active),
            "hourlyWage": float(self.hourly_wage) if self.hourly_wage is not None else None,
            "weeklyHours": float(self.weekly_hours) if self.weekly_hours is not None else None,
        }

    def __repr__(self):
        return f'<StaffMember {self.id} {self.full_name}>'


class StaffAttendance(db.Model):
    __tablename__ = 'staff_attendance'

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False)
    checkin_time = db.Column(db.DateTime(timezone=True), default=_utc_now, nullable=False)
    checkout_time = db.Column(db.DateTime(timezone=True), nullable=True)
    auto_checkout = db.Column(db.Boolean, default=False, nullable=False)

    __table_args__ = (
        db.Index('ix_staff_attendance_staff_id', 'staff_id'),
        db.Index('ix_staff_attendance_open', 'checkout_time'),
        db.Index(
            'uq_staff_attendance_one_open', 'staff_id', unique=True,
            postgresql_where=db.text('checkout_time IS NULL'),
            sqlite_where=db.text('checkout_time IS NULL'),
        ),
    )

    @property
    def is_open(self):
        return self.checkout_time is None

    def __repr__(self):
        state = "open" if self.is_open else "closed"
        return f'<StaffAttendance {self.id} staff={self.staff_id} {state}>'


class PayrollDayApproval(db.Model):
    """Manager approval of the minutes a staff member worked on a local day."""
    __tablename__ = 'payroll_day_approvals'

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False)
    work_date = db.Column(db.Date, nullable=False)
    approved = db.Column(db.Boolean, default=True, nullable=False)
    minutes_override = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.String(120), nullable=True)
    note = db.Column(db.Text, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), default=_utc_now, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('staff_id', 'work_date', name='uq_payroll_day_approvals_staff_date'),
    )

    def __repr__(self):
        return f'<PayrollDayApproval staff={self.staff_id} {self.work_date} approved={self.approved}>'


class PayrollMonthPayment(db.Model):
    """Whether a staff member's month has been paid out, and how."""
    __tablename__ = 'payroll_month_payments'

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False)
    # First day of the calendar month
    month = db.Column(db.Date, nullable=False)
    paid = db.Column(db.Boolean, default=False, nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    amount_paid = db.Column(db.Numeric(10, 2), nullable=True)
    reference = db.Column(db.Text, nullable=True)
    paid_by = db.Column(db.String(120), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('staff_id', 'month', name='uq_payroll_month_payments_staff_month'),
    )

    def __repr__(self):
        return f'<PayrollMonthPayment staff={self.staff_id} {self.month:%Y-%m} paid={self.paid}>'


# -------------------- SECURITY --------------------

class AccessPin(db.Model):
    """
    Bcrypt-hashed shared PIN for one access scope.

    Updating a PIN deactivates the previous row, so history is kept and the most
    recently updated active row per role is the one that counts.
    """
    __tablename__ = 'access_pins'

    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.Enum(PinScope, values_callable=lambda x: [e.value for e in x]), nullable=False)
    pin_hash = db.Column(db.String(100), nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utc_now, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False)

    __table_args__ = (
        db.Index('ix_access_pins_role_active', 'role', 'active'),
    )

    def __repr__(self):
        state = "active" if self.active else "inactive"
        return f'<AccessPin {self.role.value} {state}>'


# -------------------- MAINTENANCE --------------------

class AutoCheckoutRun(db.Model):
    """Ledger of the nightly auto-checkout, one row per local date."""
    __tablename__ = 'auto_checkout_runs'

    STATUS_SUCCESS = 'success'
    STATUS_ERROR = 'error'
    STATUS_SKIPPED = 'skipped'

    run_date = db.Column(db.Date, primary_key=True)
    executed_at = db.Column(db.DateTime(timezone=True), default=_utc_now, nullable=False)
    students_closed = db.Column(db.Integer, default=0, nullable=False)
    staff_closed = db.Column(db.Integer, default=0, nullable=False)
    status = db.Column(db.String(20), default=STATUS_SUCCESS, nullable=False)
    message = db.Column(db.Text, nullable=True)
    run_attempts = db.Column(db.Integer, default=0, nullable=False)

    def __repr__(self):
        return f'<AutoCheckoutRun {self.run_date} {self.status}>'


# -------------------- OFFLINE KIOSK QUEUE --------------------

class OfflineEventLog(db.Model):
    """
    Outcome of each kiosk event replayed from the offline queue.

    The kiosk generates event_uuid when the action happens, so a replay that
    already succeeded is acknowledged without being applied twice.
    """
    __tablename__ = 'offline_event_log'

    event_uuid = db.Column(db.String(64), primary_key=True)
    kind = db.Column(db.String(32), nullable=False)
    success = db.Column(db.Boolean, nullable=False)
    error_text = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False)

    def __repr__(self):
        state = "ok" if self.success else "failed"
        return f'<OfflineEventLog {self.event_uuid} {self.kind} {state}>'
