"""
Nightly session maintenance.

Wraps the auto-checkout closers in a per-day ledger (AutoCheckoutRun) so the
nightly job, the cron endpoint and the CLI can all be triggered repeatedly
without closing anything twice, and refreshes the reporting materialized views.
"""

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from attendance import safely_close_expired_sessions
from ingreso.extensions import db
from ingreso.models import AutoCheckoutRun
from ingreso.utils.constants import DEFAULT_MV_REFRESH_STATEMENT
from ingreso.utils.helpers import as_utc, format_utc_iso, local_date_of, utc_now


def _run_payload(run, status=None, already_ran=False):
    return {
        "status": status or run.status,
        "runDate": run.run_date.isoformat(),
        "executedAt": format_utc_iso(run.executed_at),
        "studentsClosed": run.students_closed,
        "staffClosed": run.staff_closed,
        "message": run.message,
        "runAttempts": run.run_attempts,
        "alreadyRan": already_ran,
    }


def _apply(run, executed_at, status, message, students_closed, staff_closed):
    run.executed_at = executed_at
    run.status = status
    run.message = message
    # A failed attempt keeps whatever the last good run recorded
    if students_closed is not None:
        run.students_closed = students_closed
    if staff_closed is not None:
        run.staff_closed = staff_closed
    run.run_attempts = (run.run_attempts or 0) + 1


def _ledger_row(run_date):
    return db.session.get(AutoCheckoutRun, run_date)


def _record_run(run_date, executed_at, status, message, students_closed=None, staff_closed=None):
    run = _ledger_row(run_date)
    if run is None:
        run = AutoCheckoutRun(run_date=run_date, students_closed=0, staff_closed=0, run_attempts=0)
        db.session.add(run)
    _apply(run, executed_at, status, message, students_closed, staff_closed)
    try:
        db.session.commit()
    except IntegrityError:
        # Another worker inserted the ledger row for this date first
        db.session.rollback()
        run = _ledger_row(run_date)
        _apply(run, executed_at, status, message, students_closed, staff_closed)
        db.session.commit()
    return run


def run_scheduled_auto_checkout(now=None, force=False):
    """
    Close expired sessions at most once per local date.

    Args:
        now: reference instant (defaults to the current time)
        force: run even when today's ledger row already says success

    Returns:
        dict: ledger payload; status is success, error or skipped
    """
    now = as_utc(now) or utc_now()
    run_date = local_date_of(now)

    existing = _ledger_row(run_date)
    if existing is not None and existing.status == AutoCheckoutRun.STATUS_SUCCESS and not force:
        current_app.logger.info(f"Auto-checkout for {run_date} already ran; skipping")
        return _run_payload(existing, status=AutoCheckoutRun.STATUS_SKIPPED, already_ran=True)

    try:
        students_closed, staff_closed = safely_close_expired_sessions(now)
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(f"Auto-checkout for {run_date} failed: {exc}", exc_info=True)
        run = _record_run(run_date, now, AutoCheckoutRun.STATUS_ERROR, str(exc))
        return _run_payload(run)

    message = f"Closed {students_closed} student and {staff_closed} staff sessions."
    run = _record_run(
        run_date, now, AutoCheckoutRun.STATUS_SUCCESS, message,
        students_closed=students_closed, staff_closed=staff_closed,
    )
    current_app.logger.info(f"Auto-checkout for {run_date}: {message}")
    return _run_payload(run)


def refresh_materialized_views():
    """Refresh the reporting materialized views (PostgreSQL only)."""
    statement = current_app.config.get("MV_REFRESH_STATEMENT", DEFAULT_MV_REFRESH_STATEMENT)
    dialect = db.engine.dialect.name
    if not statement or dialect != "postgresql":
        current_app.logger.info(f"Skipping materialized view refresh on {dialect}")
        return {"status": "skipped", "message": f"Materialized views are not available on {dialect}."}

    try:
        db.session.execute(text(statement))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(f"Materialized view refresh failed: {exc}", exc_info=True)
        return {"status": "error", "message": str(exc)}
    current_app.logger.info("Materialized views refreshed")
    return {"status": "success", "message": "Materialized views refreshed."}


def run_nightly_maintenance(now=None, force=False):
    auto_checkout = run_scheduled_auto_checkout(now=now, force=force)
    refresh = refresh_materialized_views()
    return {"autoCheckout": auto_checkout, "refresh": refresh}
