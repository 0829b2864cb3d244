"""Offline kiosk event log and monthly payroll payments

Revision ID: c71e4b0a9d25
Revises: a3f9c2d14b7e
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c71e4b0a9d25'
down_revision = 'a3f9c2d14b7e'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'offline_event_log',
        sa.Column('event_uuid', sa.String(length=64), primary_key=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error_text', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'payroll_month_payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('staff_id', sa.Integer(), sa.ForeignKey('staff_members.id', ondelete='CASCADE'), nullable=False),
        sa.Column('month', sa.Date(), nullable=False),
        sa.Column('paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount_paid', sa.Numeric(10, 2), nullable=True),
        sa.Column('reference', sa.Text(), nullable=True),
        sa.Column('paid_by', sa.String(length=120), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('staff_id', 'month', name='uq_payroll_month_payments_staff_month'),
    )


def downgrade():
    op.drop_table('payroll_month_payments')
    op.drop_table('offline_event_log')
