from datetime import date

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

import attendance
from attendance import (
    auto_checkout_cutoff,
    close_expired_sessions,
    close_expired_staff_sessions,
    safely_close_expired_sessions,
)
from ingreso import db
from ingreso import maintenance
from ingreso.maintenance import refresh_materialized_views, run_nightly_maintenance, run_scheduled_auto_checkout
from ingreso.models import AutoCheckoutRun, StaffAttendance, StudentAttendance
from ingreso.utils.helpers import as_utc
from conftest import make_lesson, make_staff, make_student, utc

# America/Guayaquil is UTC-5 all year: the 20:30 cutoff is 01:30 UTC next day


def _open_student_session(checkin_time, name="Ana Pérez"):
    student = make_student(name)
    row = StudentAttendance(student_id=student.id, lesson_id=make_lesson().id, checkin_time=checkin_time)
    db.session.add(row)
    db.session.commit()
    return row.id


def _open_staff_session(checkin_time, name="Carlos Mena"):
    member = make_staff(name)
    row = StaffAttendance(staff_id=member.id, checkin_time=checkin_time)
    db.session.add(row)
    db.session.commit()
    return row.id


def _reload(model, row_id):
    db.session.expire_all()
    return db.session.get(model, row_id)


def test_cutoff_is_on_the_local_check_in_day(client):
    # 22:00 local on March 4th is already March 5th in UTC
    assert auto_checkout_cutoff(utc(2024, 3, 5, 3, 0)) == utc(2024, 3, 5, 1, 30)
    assert auto_checkout_cutoff(utc(2024, 3, 4, 14, 0)) == utc(2024, 3, 5, 1, 30)


def test_session_before_cutoff_stays_open(client):
    row_id = _open_student_session(utc(2024, 3, 4, 14, 0))
    assert close_expired_sessions(now=utc(2024, 3, 5, 1, 29)) == 0
    db.session.commit()
    assert _reload(StudentAttendance, row_id).checkout_time is None


def test_session_past_cutoff_closes_at_cutoff(client):
    row_id = _open_student_session(utc(2024, 3, 4, 14, 0))
    assert close_expired_sessions(now=utc(2024, 3, 5, 1, 30)) == 1
    db.session.commit()

    row = _reload(StudentAttendance, row_id)
    assert as_utc(row.checkout_time) == utc(2024, 3, 5, 1, 30)
    assert row.auto_checkout is True


def test_closing_twice_counts_once(client):
    _open_student_session(utc(2024, 3, 4, 14, 0))
    now = utc(2024, 3, 6, 12, 0)
    assert close_expired_sessions(now=now) == 1
    db.session.commit()
    assert close_expired_sessions(now=now) == 0


def test_check_in_after_cutoff_closes_at_its_own_start(client):
    # 21:00 local on March 4th
    checkin = utc(2024, 3, 5, 2, 0)
    row_id = _open_student_session(checkin)

    assert close_expired_sessions(now=utc(2024, 3, 5, 3, 0)) == 1
    db.session.commit()
    row = _reload(StudentAttendance, row_id)
    assert as_utc(row.checkout_time) == checkin


def test_todays_early_session_is_not_due_yet(client):
    _open_student_session(utc(2024, 3, 4, 14, 0), name="Yesterday")
    today_id = _open_student_session(utc(2024, 3, 5, 14, 0), name="Today")

    assert close_expired_sessions(now=utc(2024, 3, 5, 18, 0)) == 1
    db.session.commit()
    assert _reload(StudentAttendance, today_id).checkout_time is None


def test_staff_closer(client):
    row_id = _open_staff_session(utc(2024, 3, 4, 14, 0))
    _open_staff_session(utc(2024, 3, 5, 14, 0), name="Later Shift")

    assert close_expired_staff_sessions(now=utc(2024, 3, 5, 2, 0)) == 1
    db.session.commit()
    row = _reload(StaffAttendance, row_id)
    assert as_utc(row.checkout_time) == utc(2024, 3, 5, 1, 30)
    assert row.auto_checkout is True


def test_closed_sessions_are_left_alone(client):
    student = make_student()
    row = StudentAttendance(
        student_id=student.id,
        checkin_time=utc(2024, 3, 4, 14, 0),
        checkout_time=utc(2024, 3, 4, 15, 0),
    )
    db.session.add(row)
    db.session.commit()

    assert safely_close_expired_sessions(now=utc(2024, 3, 10, 0, 0)) == (0, 0)
    assert as_utc(_reload(StudentAttendance, row.id).checkout_time) == utc(2024, 3, 4, 15, 0)


class FakeDriverError(Exception):
    def __init__(self, pgcode):
        super().__init__(f"driver error {pgcode}")
        self.pgcode = pgcode


def _failing_closer(pgcode):
    def closer(now=None):
        raise DBAPIError("UPDATE student_attendance", {}, FakeDriverError(pgcode))
    return closer


def test_permission_denied_is_skipped(client, monkeypatch):
    _open_staff_session(utc(2024, 3, 4, 14, 0))
    monkeypatch.setattr(attendance, "close_expired_sessions", _failing_closer("42501"))

    assert safely_close_expired_sessions(now=utc(2024, 3, 6, 0, 0)) == (0, 1)


def test_other_database_errors_propagate(client, monkeypatch):
    monkeypatch.setattr(attendance, "close_expired_staff_sessions", _failing_closer("40001"))
    with pytest.raises(DBAPIError):
        safely_close_expired_sessions(now=utc(2024, 3, 6, 0, 0))


# -------------------- RUN LEDGER --------------------

def test_auto_checkout_runs_once_per_day(client):
    _open_student_session(utc(2024, 3, 4, 14, 0))
    _open_staff_session(utc(2024, 3, 4, 15, 0))
    now = utc(2024, 3, 5, 1, 35)

    first = run_scheduled_auto_checkout(now=now)
    assert first["status"] == "success"
    assert first["runDate"] == "2024-03-04"
    assert (first["studentsClosed"], first["staffClosed"]) == (1, 1)
    assert first["runAttempts"] == 1
    assert first["alreadyRan"] is False

    again = run_scheduled_auto_checkout(now=now)
    assert again["status"] == "skipped"
    assert again["alreadyRan"] is True
    assert again["studentsClosed"] == 1

    forced = run_scheduled_auto_checkout(now=now, force=True)
    assert forced["status"] == "success"
    assert (forced["studentsClosed"], forced["staffClosed"]) == (0, 0)
    assert forced["runAttempts"] == 2
    assert db.session.get(AutoCheckoutRun, date(2024, 3, 4)).run_attempts == 2


def test_failed_run_is_recorded_and_retried(client, monkeypatch):
    now = utc(2024, 3, 5, 1, 35)
    _open_student_session(utc(2024, 3, 4, 14, 0))

    def boom(now=None):
        raise SQLAlchemyError("database went away")
    monkeypatch.setattr(maintenance, "safely_close_expired_sessions", boom)

    failed = run_scheduled_auto_checkout(now=now)
    assert failed["status"] == "error"
    assert "database went away" in failed["message"]
    assert failed["studentsClosed"] == 0
    assert failed["runAttempts"] == 1

    monkeypatch.undo()
    retried = run_scheduled_auto_checkout(now=now)
    assert retried["status"] == "success"
    assert retried["studentsClosed"] == 1
    assert retried["runAttempts"] == 2


def test_refresh_is_skipped_outside_postgres(client):
    assert refresh_materialized_views()["status"] == "skipped"


def test_nightly_maintenance(client):
    result = run_nightly_maintenance(now=utc(2024, 3, 5, 1, 35))
    assert result["autoCheckout"]["status"] == "success"
    assert result["refresh"]["status"] == "skipped"


# -------------------- ENDPOINTS --------------------

def test_maintenance_endpoints_require_token(app, client):
    app.config["SESSION_MAINTENANCE_TOKEN"] = "cron-secret"

    assert client.post('/api/maintenance/sessions').status_code == 401
    response = client.post('/api/maintenance/sessions', headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401
    assert response.get_json() == {"error": "Unauthorized"}

    response = client.post('/api/maintenance/sessions', headers={"Authorization": "Bearer cron-secret"})
    assert response.status_code == 200
    assert response.get_json() == {"ok": True, "studentsClosed": 0, "staffClosed": 0}


def test_maintenance_endpoints_open_without_token(client):
    assert client.post('/api/maintenance/sessions').status_code == 200


def test_auto_checkout_endpoint_uses_ledger(client):
    first = client.post('/api/maintenance/auto-checkout')
    assert first.status_code == 200
    assert first.get_json()["status"] == "success"

    second = client.post('/api/maintenance/auto-checkout')
    assert second.get_json()["status"] == "skipped"

    forced = client.post('/api/maintenance/auto-checkout?force=1')
    assert forced.get_json()["status"] == "success"
    assert forced.get_json()["runAttempts"] == 2


def test_auto_checkout_endpoint_reports_errors(client, monkeypatch):
    def boom(now=None):
        raise SQLAlchemyError("nope")
    monkeypatch.setattr(maintenance, "safely_close_expired_sessions", boom)

    response = client.post('/api/maintenance/auto-checkout', json={"force": True})
    assert response.status_code == 500
    assert response.get_json()["status"] == "error"


def test_nightly_endpoint(client):
    response = client.post('/api/maintenance/nightly')
    assert response.status_code == 200
    assert set(response.get_json()) == {"autoCheckout", "refresh"}


def test_resolve_stale_endpoint(client):
    _open_student_session(utc(2024, 3, 4, 14, 0))
    _open_staff_session(utc(2024, 3, 4, 14, 0))

    response = client.post('/api/attendance/resolve-stale')
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "success"
    assert (data["studentsClosed"], data["staffClosed"]) == (1, 1)
    assert data["message"] == "Closed 1 student and 1 staff sessions."


def test_cli_auto_checkout(app, client):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["auto-checkout"])
    assert result.exit_code == 0
    assert "success" in result.output

    result = runner.invoke(args=["auto-checkout"])
    assert "skipped" in result.output


def test_cli_set_pin(app, client):
    from ingreso.utils.pins import verify_security_pin

    runner = app.test_cli_runner()
    result = runner.invoke(args=["set-pin", "manager", "--pin", "8080"])
    assert result.exit_code == 0
    assert verify_security_pin("manager", "8080") is True

    result = runner.invoke(args=["set-pin", "manager", "--pin", "80"])
    assert result.exit_code != 0


def test_ledger_insert_race_updates_the_existing_row(client, monkeypatch):
    run_date = date(2024, 3, 4)
    real_lookup = maintenance._ledger_row
    lookups = []

    def row_inserted_by_another_worker(day):
        lookups.append(day)
        if len(lookups) == 1:
            db.session.execute(sa.insert(AutoCheckoutRun).values(
                run_date=day,
                executed_at=utc(2024, 3, 5, 1, 35),
                students_closed=3,
                staff_closed=1,
                status=AutoCheckoutRun.STATUS_ERROR,
                message="first worker",
                run_attempts=1,
            ))
            db.session.commit()
            return None
        return real_lookup(day)
    monkeypatch.setattr(maintenance, "_ledger_row", row_inserted_by_another_worker)

    run = maintenance._record_run(
        run_date, utc(2024, 3, 5, 1, 36), AutoCheckoutRun.STATUS_SUCCESS, None, students_closed=2,
    )

    assert len(lookups) == 2
    assert run.status == AutoCheckoutRun.STATUS_SUCCESS
    assert AutoCheckoutRun.query.count() == 1
    stored = _reload(AutoCheckoutRun, run_date)
    assert stored.run_attempts == 2
    assert stored.students_closed == 2
    # The staff count of the first worker is kept
    assert stored.staff_closed == 1
