import pytest
from unittest.mock import MagicMock

from slimbuddy.app.connect_keys import hash_key
from slimbuddy.app.health import metrics_collector


class TestSecurity:
    """Test authentication on the HTTP surface"""

    def test_authentication_required(self, auth_client):
        """Test that endpoints require authentication"""
        endpoints = [
            ("post", "/api/log_weight"),
            ("post", "/api/log_meal"),
            ("post", "/api/log_exercise"),
            ("post", "/api/log_measurements"),
            ("post", "/api/user_goals"),
            ("patch", "/api/update_user_settings"),
            ("post", "/api/update_food_value"),
            ("post", "/api/reset"),
            ("post", "/api/connect/issue"),
        ]

        for method, endpoint in endpoints:
            response = getattr(auth_client, method)(endpoint, json={})
            assert response.status_code == 401, endpoint

        assert auth_client.get("/api/weight_graph").status_code == 401
        assert auth_client.get("/api/auth_echo").status_code == 401

    def test_malformed_bearer(self, auth_client):
        response = auth_client.get("/api/auth_echo", headers={"Authorization": "Bearer invalid-token"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token format"

    def test_rejected_bearer(self, auth_client, db):
        db.auth.get_user.side_effect = Exception("JWT expired")
        response = auth_client.get("/api/auth_echo", headers={"Authorization": "Bearer aaa.bbb.ccc"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"

    def test_bearer_without_user(self, auth_client, db):
        db.auth.get_user.return_value = MagicMock(user=None)
        response = auth_client.get("/api/auth_echo", headers={"Authorization": "Bearer aaa.bbb.ccc"})
        assert response.status_code == 401

    def test_messy_bearer_header(self, auth_client, db, session_headers):
        """Agents sometimes wrap the token in extra text"""
        response = auth_client.get("/api/auth_echo", headers={"Authorization": "bearer   token is aaa.bbb.ccc thanks"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "via": "bearer", "user_id": "user-1"}
        db.auth.get_user.assert_called_with("aaa.bbb.ccc")

    def test_issue_requires_session(self, auth_client, key_service):
        """A connect key cannot mint another connect key"""
        issued = key_service.issue("user-1")

        response = auth_client.post("/api/connect/issue", headers={"X-Connect-Key": issued.plain_key})
        assert response.status_code == 401

    def test_rejections_look_identical(self, auth_client, key_service, clock):
        revoked = key_service.issue("user-1")
        live = key_service.issue("user-1")
        clock.advance(hours=1)

        bodies = set()
        for key in (revoked.plain_key, live.plain_key, "SB-AAAA-BBB-C-DDDD"):
            response = auth_client.get("/api/auth_echo", headers={"X-Connect-Key": key})
            assert response.status_code == 401
            bodies.add(response.text)

        assert bodies == {'{"detail":"Invalid or expired Connect Key"}'}

    def test_rejections_are_counted_by_reason(self, auth_client):
        before = metrics_collector.get_metrics()["connect_key_rejections"].get("not_found", 0)
        auth_client.get("/api/auth_echo", headers={"X-Connect-Key": "SB-AAAA-BBB-C-DDDD"})
        after = metrics_collector.get_metrics()["connect_key_rejections"]["not_found"]
        assert after == before + 1

    def test_malformed_connect_key(self, auth_client, key_store):
        for header in ({"X-Connect-Key": "let-me-in"}, {"Authorization": "Connect SB-123"}):
            response = auth_client.get("/api/auth_echo", headers=header)
            assert response.status_code == 400
            assert response.json()["detail"] == "Invalid Connect Key format"
        assert key_store.lookups == 0

    def test_connect_key_store_down(self, auth_client, key_store):
        key_store.find_by_hash = MagicMock(side_effect=RuntimeError("connection reset"))
        response = auth_client.get("/api/auth_echo", headers={"X-Connect-Key": "SB-AAAA-BBB-C-DDDD"})
        assert response.status_code == 503

    def test_verify_requires_a_key(self, auth_client):
        response = auth_client.post("/api/connect/verify")
        assert response.status_code == 400

    def test_verify_is_rate_limited(self, auth_client):
        for _ in range(30):
            assert auth_client.post("/api/connect/verify", headers={"X-Connect-Key": "SB-AAAA-BBB-C-DDDD"}).status_code == 401

        response = auth_client.post("/api/connect/verify", headers={"X-Connect-Key": "SB-AAAA-BBB-C-DDDD"})
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1

    def test_issue_is_rate_limited(self, auth_client, session_headers):
        for _ in range(5):
            assert auth_client.post("/api/connect/issue", headers=session_headers).status_code == 200

        response = auth_client.post("/api/connect/issue", headers=session_headers)
        assert response.status_code == 429
        assert response.json()["detail"]["error"] == "RATE_LIMIT_EXCEEDED"

    def test_issue_store_failure(self, auth_client, key_store, session_headers):
        key_store.fail_insert = RuntimeError("disk full")
        response = auth_client.post("/api/connect/issue", headers=session_headers)
        assert response.status_code == 500
        assert response.json()["detail"] == "failed_to_create_key"

    def test_key_not_in_store_plaintext(self, auth_client, key_store, session_headers):
        plain = auth_client.post("/api/connect/issue", headers=session_headers).json()["connect_key"]

        (row,) = key_store.rows.values()
        assert row.key_hash == hash_key(plain)
        assert plain not in row.model_dump_json()

    def test_input_validation_xss(self, auth_client, db, session_headers):
        """Test XSS protection in stored text"""
        db.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[{"id": "row-1"}])

        response = auth_client.post("/api/log_meal", headers=session_headers, json={
            "meal_description": "<script>alert('xss')</script>", "syns": 1
        })

        assert response.status_code == 200
        stored = db.table.return_value.insert.call_args.args[0]["meal_description"]
        assert "<script>" not in stored

    @pytest.mark.parametrize("origin", ["https://chat.example.com", "https://malicious-site.com"])
    def test_cors_allows_connect_key_header(self, auth_client, origin):
        response = auth_client.options("/api/connect/verify", headers={
            "Origin": origin,
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-Connect-Key",
        })
        assert response.status_code == 200
        assert "x-connect-key" in response.headers["access-control-allow-headers"].lower()
