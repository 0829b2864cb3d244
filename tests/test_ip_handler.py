from ingreso.utils.ip_handler import get_real_ip, is_trusted_proxy


def _real_ip(app, remote_addr, headers=None):
    with app.test_request_context('/', headers=headers or {}, environ_base={"REMOTE_ADDR": remote_addr}):
        return get_real_ip()


def test_direct_client_ignores_proxy_headers(app):
    headers = {"CF-Connecting-IP": "198.51.100.1", "X-Forwarded-For": "198.51.100.2"}
    assert _real_ip(app, "192.0.2.10", headers) == "192.0.2.10"


def test_cloudflare_peer_uses_connecting_ip(app):
    assert _real_ip(app, "104.16.0.1", {"CF-Connecting-IP": "198.51.100.1"}) == "198.51.100.1"


def test_cloudflare_peer_uses_last_forwarded_hop(app):
    headers = {"X-Forwarded-For": "6.6.6.6, 198.51.100.3"}
    assert _real_ip(app, "2606:4700::1", headers) == "198.51.100.3"


def test_malformed_header_falls_back_to_peer(app):
    assert _real_ip(app, "104.16.0.1", {"CF-Connecting-IP": "not-an-ip"}) == "104.16.0.1"


def test_configured_proxy_is_trusted(app, monkeypatch):
    monkeypatch.setitem(app.config, "TRUSTED_PROXIES", ["10.0.0.0/8"])
    assert _real_ip(app, "10.2.3.4", {"X-Forwarded-For": "198.51.100.4"}) == "198.51.100.4"


def test_is_trusted_proxy(app):
    with app.app_context():
        assert is_trusted_proxy("162.158.1.1") is True
        assert is_trusted_proxy("127.0.0.1") is False
        assert is_trusted_proxy("") is False
        assert is_trusted_proxy("garbage") is False
