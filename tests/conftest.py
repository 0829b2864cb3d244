import os
import sys
from datetime import datetime, timezone

# Override env vars for testing
os.environ["SECRET_KEY"] = "test-secret"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["FLASK_ENV"] = "testing"
os.environ["RATELIMIT_STORAGE_URI"] = "memory://"
os.environ["BCRYPT_LOG_ROUNDS"] = "4"
os.environ["TIMEZONE"] = "America/Guayaquil"
os.environ.pop("SESSION_MAINTENANCE_TOKEN", None)
os.environ.pop("MAINTENANCE_MODE", None)

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from ingreso import app as flask_app, db
import wsgi  # noqa: F401  registers the JSON and HTML error pages
from ingreso.extensions import limiter
from ingreso.models import Lesson, PinScope, StaffMember, Student
from ingreso.utils.pins import update_security_pin

MANAGER_PIN = "4321"
STAFF_PIN = "1234"


@pytest.fixture
def app():
    """Provide the Flask app instance for tests."""
    flask_app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        ENV="testing",
        SESSION_COOKIE_SECURE=False,
        SESSION_MAINTENANCE_TOKEN="",
        REPORT_VIEWS=[],
        TIMEZONE="America/Guayaquil",
    )
    yield flask_app


@pytest.fixture
def client(app):
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    limiter.reset()
    client = app.test_client()
    yield client
    db.session.remove()
    db.drop_all()
    ctx.pop()


# SQLite ignores ON DELETE CASCADE unless foreign keys are switched on
from sqlalchemy import event
from sqlalchemy.engine import Engine


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


event.listen(Engine, "connect", _enable_sqlite_foreign_keys)


@pytest.fixture
def pins(client):
    """Configure both access PINs."""
    update_security_pin(PinScope.MANAGER, MANAGER_PIN)
    update_security_pin(PinScope.STAFF, STAFF_PIN)
    return {"manager": MANAGER_PIN, "staff": STAFF_PIN}


def unlock(client, scope, pin):
    response = client.post('/api/security/verify', json={"scope": scope, "pin": pin})
    assert response.status_code == 200, response.get_json()
    return response


@pytest.fixture
def staff_client(client, pins):
    unlock(client, "staff", pins["staff"])
    return client


@pytest.fixture
def manager_client(client, pins):
    unlock(client, "manager", pins["manager"])
    return client


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_student(full_name="Ana Pérez", status="activo"):
    student = Student(full_name=full_name, status=status)
    db.session.add(student)
    db.session.commit()
    return student


def make_lesson(level="A1", seq=1, name=None):
    lesson = Lesson(level=level, seq=seq, lesson=name or f"{level} lesson {seq}")
    db.session.add(lesson)
    db.session.commit()
    return lesson


def make_staff(full_name="Carlos Mena", active=True, hourly_wage=None):
    member = StaffMember(full_name=full_name, active=active, hourly_wage=hourly_wage)
    db.session.add(member)
    db.session.commit()
    return member
