"""
Authentication route tests: register, login, me, logout.
"""

import pytest

from storefront.extensions import db
from storefront.models import SessionToken

from conftest import PASSWORD, auth_headers, make_user


class TestRegister:

    def test_register_creates_customer_and_session(self, client, setup_roles):
        resp = client.post("/api/auth/register",
                           json={"email": "New@Example.com", "password": PASSWORD, "name": "New"})

        assert resp.status_code == 201
        assert resp.json["user"]["email"] == "new@example.com"
        assert resp.json["roles"] == ["customer"]
        assert resp.json["token"]
        assert resp.json["expires_at"].endswith("Z")

    def test_duplicate_email(self, client, setup_roles):
        make_user("taken@example.com")
        resp = client.post("/api/auth/register", json={"email": "taken@example.com", "password": PASSWORD})
        assert resp.status_code == 409

    @pytest.mark.parametrize("password", ["short1!", "alllowercase1!", "NoDigits!!", "NoSpecial123"])
    def test_weak_passwords_rejected(self, client, setup_roles, password):
        resp = client.post("/api/auth/register", json={"email": "weak@example.com", "password": password})
        assert resp.status_code == 400

    def test_missing_fields(self, client, setup_roles):
        assert client.post("/api/auth/register", json={"email": "x@example.com"}).status_code == 400


class TestLogin:

    def test_login_and_me(self, client, setup_roles):
        make_user("staff@example.com", "support")

        resp = client.post("/api/auth/login", json={"email": "STAFF@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        token = resp.json["token"]

        me = client.get("/api/auth/me", headers=auth_headers(token))
        assert me.status_code == 200
        assert me.json["roles"] == ["support"]
        assert me.json["is_staff"] is True
        assert me.json["permissions"]["payment"] == ["list", "read"]

    def test_customer_me(self, client, customer_headers):
        me = client.get("/api/auth/me", headers=customer_headers)
        assert me.json["is_staff"] is False
        assert me.json["permissions"] == {}

    def test_wrong_password(self, client, setup_roles):
        make_user("user@example.com")
        resp = client.post("/api/auth/login", json={"email": "user@example.com", "password": "Wrong123!"})
        assert resp.status_code == 401
        assert resp.json["error"] == "Invalid credentials"

    def test_unknown_email(self, client, setup_roles):
        resp = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})
        assert resp.status_code == 401

    def test_logout_revokes_token(self, client, setup_roles):
        make_user("leaving@example.com")
        token = client.post("/api/auth/login",
                            json={"email": "leaving@example.com", "password": PASSWORD}).json["token"]

        assert client.post("/api/auth/logout", headers=auth_headers(token)).status_code == 200
        assert client.get("/api/auth/me", headers=auth_headers(token)).status_code == 401

        db.session.expire_all()
        revoked = db.session.query(SessionToken).filter(SessionToken.revoked_at.isnot(None)).count()
        assert revoked == 1
