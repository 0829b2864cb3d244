def test_health_allowed_during_maintenance(client, monkeypatch):
    monkeypatch.setenv("MAINTENANCE_MODE", "1")
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_data(as_text=True) == "ok"


def test_pages_show_maintenance_message(client, monkeypatch):
    monkeypatch.setenv("MAINTENANCE_MODE", "true")
    monkeypatch.setenv("MAINTENANCE_MESSAGE", "Routine **upgrade** in progress")
    monkeypatch.setenv("MAINTENANCE_EXPECTED_END", "Back at 2pm")
    response = client.get("/registro")
    assert response.status_code == 503
    body = response.get_data(as_text=True)
    assert "<strong>upgrade</strong>" in body
    assert "Back at 2pm" in body


def test_maintenance_message_is_sanitized(client, monkeypatch):
    monkeypatch.setenv("MAINTENANCE_MODE", "true")
    monkeypatch.setenv("MAINTENANCE_MESSAGE", "Closed <script>alert(1)</script>")
    response = client.get("/registro")
    assert response.status_code == 503
    assert "<script>alert(1)</script>" not in response.get_data(as_text=True)


def test_api_answers_json_during_maintenance(client, monkeypatch):
    monkeypatch.setenv("MAINTENANCE_MODE", "on")
    response = client.get("/api/lessons")
    assert response.status_code == 503
    assert response.get_json() == {"error": "Service under maintenance"}


def test_bypass_token_lets_request_through(client, monkeypatch):
    monkeypatch.setenv("MAINTENANCE_MODE", "yes")
    monkeypatch.setenv("MAINTENANCE_BYPASS_TOKEN", "let-me-in")
    assert client.get("/registro?maintenance_bypass=wrong").status_code == 503
    assert client.get("/registro?maintenance_bypass=let-me-in").status_code == 200
