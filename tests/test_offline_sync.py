import pytest

from attendance import AttendanceError, OfflineEventError, register_staff_checkin, replay_offline_event
from ingreso import db
from ingreso.models import OfflineEventLog, StaffAttendance, StudentAttendance
from ingreso.utils.helpers import as_utc
from conftest import make_lesson, make_staff, make_student, utc


def _event(event_id, kind, **payload):
    return {"id": event_id, "kind": kind, "payload": payload}


def test_student_check_in_is_replayed_once(client):
    student = make_student()
    lesson = make_lesson()
    event = _event("evt-1", "student_checkin", student_id=student.id, lesson_id=lesson.id,
                   checkin_time="2024-03-05T14:00:00Z")

    response = client.post('/api/offline-sync', json=event)
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ok"
    assert data["duplicate"] is False

    row = db.session.get(StudentAttendance, data["attendanceId"])
    assert as_utc(row.checkin_time) == utc(2024, 3, 5, 14, 0)

    again = client.post('/api/offline-sync', json=event)
    assert again.status_code == 200
    assert again.get_json()["duplicate"] is True
    assert StudentAttendance.query.count() == 1
    assert db.session.get(OfflineEventLog, "evt-1").success is True


def test_student_check_out_by_student_id(client):
    student = make_student()
    lesson = make_lesson()
    replay_offline_event("in-1", "student_checkin", {
        "student_id": student.id, "lesson_id": lesson.id, "checkin_time": "2024-03-05T14:00:00Z",
    })

    # The kiosk never learned the server's attendance id
    response = client.post('/api/offline-sync', json=_event(
        "out-1", "student_checkout", student_id=student.id, attendance_id=999,
        checkout_time="2024-03-05T15:30:00Z",
    ))
    assert response.status_code == 200

    db.session.expire_all()
    row = StudentAttendance.query.filter_by(student_id=student.id).one()
    assert as_utc(row.checkout_time) == utc(2024, 3, 5, 15, 30)
    assert row.auto_checkout is False


def test_queued_check_out_replaces_the_auto_checkout_time(client):
    student = make_student()
    lesson = make_lesson()
    row = StudentAttendance(student_id=student.id, lesson_id=lesson.id, checkin_time=utc(2024, 3, 5, 14, 0),
                            checkout_time=utc(2024, 3, 6, 1, 30), auto_checkout=True)
    db.session.add(row)
    db.session.commit()
    row_id = row.id

    replay_offline_event("out-2", "student_checkout", {
        "attendance_id": row_id, "checkout_time": "2024-03-05T16:00:00Z",
    })

    db.session.expire_all()
    row = db.session.get(StudentAttendance, row_id)
    assert as_utc(row.checkout_time) == utc(2024, 3, 5, 16, 0)
    assert row.auto_checkout is False


def test_check_out_without_open_session_is_a_conflict(client):
    student = make_student()
    response = client.post('/api/offline-sync', json=_event(
        "out-3", "student_checkout", student_id=student.id, checkout_time="2024-03-05T15:30:00Z",
    ))
    assert response.status_code == 409
    assert response.get_json()["status"] == "error"

    entry = db.session.get(OfflineEventLog, "out-3")
    assert entry.success is False
    assert entry.error_text == "No open attendance found to close."


def test_failed_event_can_be_retried(client):
    student = make_student()
    lesson = make_lesson()
    event = ("in-2", "student_checkin", {
        "student_id": student.id, "lesson_id": lesson.id + 1, "checkin_time": "2024-03-05T14:00:00Z",
    })
    with pytest.raises(AttendanceError, match="Lesson not found"):
        replay_offline_event(*event)

    event[2]["lesson_id"] = lesson.id
    result = replay_offline_event(*event)
    assert result["duplicate"] is False
    assert OfflineEventLog.query.count() == 1
    assert db.session.get(OfflineEventLog, "in-2").success is True


@pytest.mark.parametrize("body", [
    {"kind": "student_checkin", "payload": {}},
    {"id": "x-1", "kind": "teleport", "payload": {}},
    {"id": "  ", "kind": "student_checkin", "payload": {}},
])
def test_events_without_id_or_kind_are_rejected(client, body):
    response = client.post('/api/offline-sync', json=body)
    assert response.status_code == 400
    assert OfflineEventLog.query.count() == 0


def test_malformed_payload_is_recorded(client):
    response = client.post('/api/offline-sync', json=_event(
        "in-3", "student_checkin", student_id=1, lesson_id=1, checkin_time="half past nine",
    ))
    assert response.status_code == 400
    assert "checkin_time" in response.get_json()["error"]
    assert db.session.get(OfflineEventLog, "in-3").success is False


def test_staff_events_need_staff_pin(client, pins):
    member = make_staff()
    response = client.post('/api/offline-sync', json=_event(
        "staff-1", "staff_checkin", staff_id=member.id, checkin_time="2024-03-05T13:00:00Z",
    ))
    assert response.status_code == 401
    assert StaffAttendance.query.count() == 0


def test_staff_shift_is_replayed(staff_client):
    member = make_staff()
    response = staff_client.post('/api/offline-sync', json=_event(
        "staff-2", "staff_checkin", staff_id=member.id, checkin_time="2024-03-05T13:00:00Z",
    ))
    assert response.status_code == 200
    attendance_id = response.get_json()["attendanceId"]

    response = staff_client.post('/api/offline-sync', json=_event(
        "staff-3", "staff_checkout", staff_id=member.id, checkout_time="2024-03-05T12:00:00Z",
    ))
    assert response.status_code == 200

    db.session.expire_all()
    row = db.session.get(StaffAttendance, attendance_id)
    # A check-out queued with a skewed clock never precedes the check-in
    assert as_utc(row.checkout_time) == utc(2024, 3, 5, 13, 0)


def test_staff_check_in_conflicts_with_open_shift(client):
    member = make_staff()
    register_staff_checkin(member.id, now=utc(2024, 3, 5, 13, 0))
    with pytest.raises(AttendanceError, match="already has an open attendance"):
        replay_offline_event("staff-4", "staff_checkin", {
            "staff_id": member.id, "checkin_time": "2024-03-05T14:00:00Z",
        })


def test_payload_must_be_an_object(client):
    with pytest.raises(OfflineEventError):
        replay_offline_event("x-2", "staff_checkout", ["staff_id", 1])
    assert db.session.get(OfflineEventLog, "x-2").success is False
