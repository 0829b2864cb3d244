from conftest import MANAGER_PIN, STAFF_PIN


def test_pin_status_endpoint(client, pins):
    response = client.get('/api/security/pins')
    assert response.status_code == 200
    data = response.get_json()
    assert {entry["scope"]: entry["isSet"] for entry in data["pins"]} == {"staff": True, "manager": True}
    assert data["summary"]["hasManager"] is True
    assert data["summary"]["hasStaff"] is True
    # Hashes never leave the server
    assert "pin_hash" not in response.get_data(as_text=True)


def test_verify_pin(client, pins):
    response = client.post('/api/security/verify', json={"scope": "manager", "pin": MANAGER_PIN})
    assert response.status_code == 200
    assert response.get_json() == {"valid": True, "scope": "manager"}
    assert client.get_cookie('ir_pin_manager') is not None


def test_verify_wrong_pin(client, pins):
    response = client.post('/api/security/verify', json={"scope": "staff", "pin": "0000"})
    assert response.status_code == 401
    assert response.get_json() == {"valid": False, "error": "Incorrect PIN"}
    assert client.get_cookie('ir_pin_staff') is None


def test_verify_unknown_scope(client, pins):
    response = client.post('/api/security/verify', json={"scope": "admin", "pin": MANAGER_PIN})
    assert response.status_code == 400


def test_verify_without_configured_pin(client):
    response = client.post('/api/security/verify', json={"scope": "manager", "pin": "1234"})
    assert response.status_code == 401


def test_session_check_rejects_unknown_scope(client):
    response = client.post('/api/security/session', json={"scope": "root"})
    assert response.status_code == 400
    assert response.get_json() == {"error": "Invalid scope"}


def test_failed_attempts_are_rate_limited(client, pins):
    for _ in range(5):
        response = client.post('/api/security/verify', json={"scope": "staff", "pin": "0000"})
        assert response.status_code == 401

    response = client.post('/api/security/verify', json={"scope": "staff", "pin": STAFF_PIN})
    assert response.status_code == 429
    assert "Too many attempts" in response.get_json()["error"]

    # The allowance is shared by every PIN entry point
    response = client.post('/api/auth/manager-pin', json={"pin": MANAGER_PIN})
    assert response.status_code == 429


def test_forwarded_headers_from_untrusted_peer_do_not_reset_the_limit(client, pins):
    for i in range(5):
        response = client.post(
            '/api/security/verify',
            json={"scope": "staff", "pin": "0000"},
            headers={"CF-Connecting-IP": f"10.0.0.{i}", "X-Forwarded-For": f"10.1.0.{i}"},
        )
        assert response.status_code == 401

    response = client.post(
        '/api/security/verify',
        json={"scope": "staff", "pin": "0000"},
        headers={"CF-Connecting-IP": "10.0.0.99"},
    )
    assert response.status_code == 429


def test_cloudflare_peer_is_limited_per_visitor(client, pins):
    cloudflare_edge = {"REMOTE_ADDR": "173.245.48.10"}
    for _ in range(5):
        response = client.post(
            '/api/security/verify',
            json={"scope": "staff", "pin": "0000"},
            headers={"CF-Connecting-IP": "203.0.113.7"},
            environ_base=cloudflare_edge,
        )
        assert response.status_code == 401

    response = client.post(
        '/api/security/verify',
        json={"scope": "staff", "pin": "0000"},
        headers={"CF-Connecting-IP": "203.0.113.7"},
        environ_base=cloudflare_edge,
    )
    assert response.status_code == 429

    # Another visitor behind the same edge keeps their own allowance
    response = client.post(
        '/api/security/verify',
        json={"scope": "staff", "pin": "0000"},
        headers={"CF-Connecting-IP": "203.0.113.8"},
        environ_base=cloudflare_edge,
    )
    assert response.status_code == 401


def test_successful_attempts_are_not_counted(client, pins):
    for _ in range(8):
        response = client.post('/api/security/verify', json={"scope": "staff", "pin": STAFF_PIN})
        assert response.status_code == 200


def test_first_manager_pin_setup_is_open(client):
    response = client.post('/api/security/update', json={"scope": "manager", "newPin": "2468"})
    assert response.status_code == 200
    data = response.get_json()
    assert data["ok"] is True
    assert data["summary"]["hasManager"] is True
    # Setting the PIN also unlocks the scope
    assert client.get_cookie('ir_pin_manager') is not None


def test_staff_pin_needs_manager_first(client):
    response = client.post('/api/security/update', json={"scope": "staff", "newPin": "1357"})
    assert response.status_code == 400
    assert "manager PIN" in response.get_json()["error"]


def test_update_requires_current_manager_pin(client, pins):
    response = client.post('/api/security/update', json={"scope": "manager", "newPin": "9999"})
    assert response.status_code == 401

    response = client.post(
        '/api/security/update',
        json={"scope": "staff", "newPin": "5555", "managerPin": "0000"},
    )
    assert response.status_code == 401

    response = client.post(
        '/api/security/update',
        json={"scope": "staff", "newPin": "5555", "managerPin": MANAGER_PIN},
    )
    assert response.status_code == 200
    assert client.post('/api/security/verify', json={"scope": "staff", "pin": "5555"}).status_code == 200
    assert client.post('/api/security/verify', json={"scope": "staff", "pin": STAFF_PIN}).status_code == 401


def test_update_accepts_current_pin_alias(client, pins):
    response = client.post(
        '/api/security/update',
        json={"scope": "manager", "pin": "8642", "currentPin": MANAGER_PIN},
    )
    assert response.status_code == 200


def test_update_rejects_bad_format(client, pins):
    response = client.post(
        '/api/security/update',
        json={"scope": "staff", "newPin": "12ab", "managerPin": MANAGER_PIN},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "PIN must be 4 to 8 digits."


# -------------------- BROWSER PROMPT --------------------

def test_prompt_unlocks_and_redirects(client, pins):
    response = client.post('/security/prompt', data={
        "scope": "staff",
        "next": "/registro-personal",
        "pin": STAFF_PIN,
    })
    assert response.status_code == 302
    assert response.headers['Location'].endswith('/registro-personal')
    assert client.get('/registro-personal').status_code == 200


def test_prompt_ignores_offsite_next(client, pins):
    response = client.post('/security/prompt', data={
        "scope": "manager",
        "next": "https://evil.example.com/",
        "pin": MANAGER_PIN,
    })
    assert response.status_code == 302
    assert 'evil.example.com' not in response.headers['Location']


def test_prompt_wrong_pin(client, pins):
    response = client.post('/security/prompt', data={"scope": "staff", "pin": "0000"})
    assert response.status_code == 401
    assert 'Incorrect PIN.' in response.get_data(as_text=True)
    assert client.get_cookie('ir_pin_staff') is None


def test_prompt_get_renders_form(client):
    response = client.get('/security/prompt?scope=manager&next=/administracion')
    assert response.status_code == 200
    assert 'Enter the manager PIN' in response.get_data(as_text=True)


def test_admin_security_page_changes_staff_pin(manager_client):
    response = manager_client.post('/administracion/seguridad', data={
        "scope": "staff",
        "new_pin": "7777",
        "manager_pin": MANAGER_PIN,
    })
    assert response.status_code == 302
    assert manager_client.post(
        '/api/security/verify', json={"scope": "staff", "pin": "7777"}
    ).status_code == 200


def test_admin_security_page_rejects_wrong_manager_pin(manager_client):
    response = manager_client.post('/administracion/seguridad', data={
        "scope": "staff",
        "new_pin": "7777",
        "manager_pin": "0000",
    })
    assert response.status_code == 400
    assert 'Manager PIN is incorrect.' in response.get_data(as_text=True)
