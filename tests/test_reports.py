from sqlalchemy import text

from ingreso import db
from conftest import make_student


def _create_view():
    db.session.execute(text("CREATE VIEW student_roster AS SELECT id, full_name FROM students"))
    db.session.commit()


def _drop_view():
    db.session.execute(text("DROP VIEW IF EXISTS student_roster"))
    db.session.commit()


def test_reports_need_manager(app, staff_client):
    app.config["REPORT_VIEWS"] = ["student_roster"]
    assert staff_client.get('/api/reports').status_code == 401
    assert staff_client.get('/api/reports/student_roster').status_code == 401


def test_list_reports(app, manager_client):
    app.config["REPORT_VIEWS"] = ["student_roster", "bad name; drop table students"]
    response = manager_client.get('/api/reports')
    assert response.status_code == 200
    assert response.get_json() == {"reports": ["student_roster"]}


def test_read_whitelisted_view(app, manager_client):
    app.config["REPORT_VIEWS"] = ["student_roster"]
    make_student("Ana Pérez")
    make_student("Luis Vera")
    _create_view()
    try:
        response = manager_client.get('/api/reports/student_roster')
        assert response.status_code == 200
        data = response.get_json()
        assert data["report"] == "student_roster"
        assert data["count"] == 2
        assert {row["full_name"] for row in data["rows"]} == {"Ana Pérez", "Luis Vera"}

        limited = manager_client.get('/api/reports/student_roster?limit=1').get_json()
        assert limited["count"] == 1

        assert manager_client.get('/api/reports/student_roster?limit=x').status_code == 400
    finally:
        _drop_view()


def test_unknown_report_is_not_found(app, manager_client):
    app.config["REPORT_VIEWS"] = ["student_roster"]
    response = manager_client.get('/api/reports/students')
    assert response.status_code == 404
    assert response.get_json() == {"error": "Unknown report"}


def test_admin_dashboard_lists_reports(app, manager_client):
    app.config["REPORT_VIEWS"] = ["student_roster"]
    response = manager_client.get('/administracion')
    assert response.status_code == 200
    assert 'student_roster' in response.get_data(as_text=True)
