"""Initial schema: students, lessons, staff, attendance, PINs, payroll approvals, auto-checkout runs

Revision ID: a3f9c2d14b7e
Revises:
Create Date: 2025-12-02

Partial unique indexes allow at most one open session per student and per
staff member; the auto-checkout and the kiosks rely on it under concurrency.

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a3f9c2d14b7e'
down_revision = None
branch_labels = None
depends_on = None


pin_scope = sa.Enum('staff', 'manager', name='pinscope')


def upgrade():
    op.create_table(
        'students',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('full_name', sa.String(length=200), nullable=True),
        sa.Column('status', sa.String(length=30), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'lessons',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('lesson', sa.String(length=200), nullable=False),
        sa.Column('level', sa.String(length=20), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
    )
    op.create_index('ix_lessons_level_seq', 'lessons', ['level', 'seq'])

    op.create_table(
        'student_attendance',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('students.id', ondelete='CASCADE'), nullable=False),
        sa.Column('lesson_id', sa.Integer(), sa.ForeignKey('lessons.id'), nullable=True),
        sa.Column('checkin_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('checkout_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirm_override', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_checkout', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_student_attendance_student_id', 'student_attendance', ['student_id'])
    op.create_index('ix_student_attendance_open', 'student_attendance', ['checkout_time'])
    op.create_index(
        'uq_student_attendance_one_open', 'student_attendance', ['student_id'], unique=True,
        postgresql_where=sa.text('checkout_time IS NULL'),
        sqlite_where=sa.text('checkout_time IS NULL'),
    )

    op.create_table(
        'staff_members',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('full_name', sa.String(length=200), nullable=True),
        sa.Column('role', sa.String(length=100), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('hourly_wage', sa.Numeric(10, 2), nullable=True),
        sa.Column('weekly_hours', sa.Numeric(6, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'staff_attendance',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('staff_id', sa.Integer(), sa.ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False),
        sa.Column('checkin_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('checkout_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_checkout', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_staff_attendance_staff_id', 'staff_attendance', ['staff_id'])
    op.create_index('ix_staff_attendance_open', 'staff_attendance', ['checkout_time'])
    op.create_index(
        'uq_staff_attendance_one_open', 'staff_attendance', ['staff_id'], unique=True,
        postgresql_where=sa.text('checkout_time IS NULL'),
        sqlite_where=sa.text('checkout_time IS NULL'),
    )

    op.create_table(
        'payroll_day_approvals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('staff_id', sa.Integer(), sa.ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False),
        sa.Column('work_date', sa.Date(), nullable=False),
        sa.Column('approved', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('minutes_override', sa.Integer(), nullable=True),
        sa.Column('approved_by', sa.String(length=120), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('staff_id', 'work_date', name='uq_payroll_day_approvals_staff_date'),
    )

    op.create_table(
        'access_pins',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('role', pin_scope, nullable=False),
        sa.Column('pin_hash', sa.String(length=100), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_access_pins_role_active', 'access_pins', ['role', 'active'])

    op.create_table(
        'auto_checkout_runs',
        sa.Column('run_date', sa.Date(), primary_key=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('students_closed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('staff_closed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='success'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('run_attempts', sa.Integer(), nullable=False, server_default='0'),
    )


def downgrade():
    op.drop_table('auto_checkout_runs')
    op.drop_index('ix_access_pins_role_active', table_name='access_pins')
    op.drop_table('access_pins')
    pin_scope.drop(op.get_bind(), checkfirst=True)
    op.drop_table('payroll_day_approvals')
    op.drop_index('uq_staff_attendance_one_open', table_name='staff_attendance')
    op.drop_index('ix_staff_attendance_open', table_name='staff_attendance')
    op.drop_index('ix_staff_attendance_staff_id', table_name='staff_attendance')
    op.drop_table('staff_attendance')
    op.drop_table('staff_members')
    op.drop_index('uq_student_attendance_one_open', table_name='student_attendance')
    op.drop_index('ix_student_attendance_open', table_name='student_attendance')
    op.drop_index('ix_student_attendance_student_id', table_name='student_attendance')
    op.drop_table('student_attendance')
    op.drop_index('ix_lessons_level_seq', table_name='lessons')
    op.drop_table('lessons')
    op.drop_table('students')
