"""Integration tests for the admin email catalog endpoints.

Tests: /admin/form-types, /admin/templates, /admin/recipients
Auth: X-Admin-Token header.

The database starts empty: everything the email API needs is created over
HTTP, the same way a fresh install is configured.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import create_app

ADMIN = {"X-Admin-Token": "admin-secret"}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _form_type(client, slug="contact", name="Contact") -> dict:
    resp = client.post("/admin/form-types", json={"name": name, "slug": slug}, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _template(client, form_type_id, slug="contact-template", **extra) -> dict:
    body = {
        "formTypeId": form_type_id,
        "name": "Contact",
        "slug": slug,
        "subject": "{{subject}} from {{subdomain}}",
        "htmlBody": "<p>{{message}}</p>",
    }
    body.update(extra)
    resp = client.post("/admin/templates", json=body, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _recipient(client, form_type_id, email="ops@molochain.test") -> dict:
    resp = client.post("/admin/recipients", json={"email": email, "formTypeId": form_type_id}, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def client(tmp_path):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}",
        admin_token="admin-secret",
        smtp_host="smtp.test",
        smtp_from_email="noreply@molochain.test",
        log_level="WARNING",
    )
    with TestClient(create_app(settings)) as tc:
        yield tc


# ---------------------------------------------------------------------------
# Fresh install end to end
# ---------------------------------------------------------------------------


class TestFreshInstall:
    def test_configure_catalog_then_send(self, client):
        form = _form_type(client)
        _template(client, form["id"])
        _recipient(client, form["id"])
        raw_key = client.post("/admin/api-keys", json={"subdomain": "shop"}, headers=ADMIN).json()["data"]["rawApiKey"]

        with patch("aiosmtplib.send", new=AsyncMock(return_value=({}, "OK"))) as mock_send:
            resp = client.post(
                "/api/email/send",
                json={"formType": "contact", "variables": {"subject": "Hi", "message": "Hello"}},
                headers={"x-api-key": raw_key},
            )

        assert resp.status_code == 200, resp.text
        assert resp.json()["success"] is True
        msg = mock_send.call_args.args[0]
        assert msg["To"] == "ops@molochain.test"
        assert msg["Subject"] == "Hi from shop"


# ---------------------------------------------------------------------------
# Form types
# ---------------------------------------------------------------------------


class TestFormTypes:
    def test_requires_admin_token(self, client):
        assert client.get("/admin/form-types").status_code == 401
        assert client.post("/admin/form-types", json={"name": "x", "slug": "x"}).status_code == 401

    def test_create_and_list(self, client):
        created = _form_type(client)
        assert created["slug"] == "contact"
        assert created["isActive"] is True

        data = client.get("/admin/form-types", headers=ADMIN).json()["data"]
        assert [ft["slug"] for ft in data] == ["contact"]

    def test_duplicate_slug_conflicts(self, client):
        _form_type(client)
        resp = client.post("/admin/form-types", json={"name": "Again", "slug": "contact"}, headers=ADMIN)
        assert resp.status_code == 409

    def test_invalid_slug_rejected(self, client):
        resp = client.post("/admin/form-types", json={"name": "Bad", "slug": "Has Spaces"}, headers=ADMIN)
        assert resp.status_code == 400

    def test_toggle_hides_from_public_list(self, client):
        form = _form_type(client)
        raw_key = client.post("/admin/api-keys", json={"subdomain": "shop"}, headers=ADMIN).json()["data"]["rawApiKey"]

        resp = client.patch(f"/admin/form-types/{form['id']}", headers=ADMIN)
        assert resp.json()["data"]["isActive"] is False

        public = client.get("/api/email/form-types", headers={"x-api-key": raw_key}).json()["data"]
        assert public == []

    def test_toggle_missing(self, client):
        assert client.patch("/admin/form-types/999", headers=ADMIN).status_code == 404


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TestTemplates:
    def test_create_and_list_with_form_type_name(self, client):
        form = _form_type(client)
        created = _template(client, form["id"], textBody="{{message}}")
        assert created["formTypeId"] == form["id"]
        assert created["textBody"] == "{{message}}"

        data = client.get("/admin/templates", headers=ADMIN).json()["data"]
        assert len(data) == 1
        assert data[0]["formTypeName"] == "Contact"

    def test_unknown_form_type_rejected(self, client):
        resp = client.post(
            "/admin/templates",
            json={"formTypeId": 42, "name": "x", "slug": "x", "subject": "s", "htmlBody": "<p></p>"},
            headers=ADMIN,
        )
        assert resp.status_code == 400

    def test_duplicate_slug_conflicts(self, client):
        form = _form_type(client)
        _template(client, form["id"])
        resp = client.post(
            "/admin/templates",
            json={"formTypeId": form["id"], "name": "x", "slug": "contact-template", "subject": "s", "htmlBody": "b"},
            headers=ADMIN,
        )
        assert resp.status_code == 409

    def test_missing_required_fields(self, client):
        resp = client.post("/admin/templates", json={"name": "x"}, headers=ADMIN)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Validation error"

    def test_partial_update(self, client):
        form = _form_type(client)
        template = _template(client, form["id"])

        resp = client.put(f"/admin/templates/{template['id']}", json={"subject": "New subject"}, headers=ADMIN)
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["subject"] == "New subject"
        assert data["htmlBody"] == template["htmlBody"]
        assert data["slug"] == template["slug"]

    def test_update_missing(self, client):
        assert client.put("/admin/templates/999", json={"subject": "x"}, headers=ADMIN).status_code == 404

    def test_empty_update_rejected(self, client):
        form = _form_type(client)
        template = _template(client, form["id"])
        assert client.put(f"/admin/templates/{template['id']}", json={}, headers=ADMIN).status_code == 400

    def test_delete(self, client):
        form = _form_type(client)
        template = _template(client, form["id"])

        resp = client.delete(f"/admin/templates/{template['id']}", headers=ADMIN)
        assert resp.json() == {"success": True, "message": "Template deleted successfully"}
        assert client.get("/admin/templates", headers=ADMIN).json()["data"] == []
        assert client.delete(f"/admin/templates/{template['id']}", headers=ADMIN).status_code == 404


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------


class TestRecipients:
    def test_add_and_list(self, client):
        form = _form_type(client)
        created = _recipient(client, form["id"])
        assert created["email"] == "ops@molochain.test"
        assert created["isActive"] is True

        data = client.get("/admin/recipients", headers=ADMIN).json()["data"]
        assert data[0]["formTypeName"] == "Contact"

    def test_invalid_email_rejected(self, client):
        resp = client.post("/admin/recipients", json={"email": "nope"}, headers=ADMIN)
        assert resp.status_code == 400

    def test_toggle_and_remove(self, client):
        form = _form_type(client)
        recipient = _recipient(client, form["id"])

        resp = client.patch(f"/admin/recipients/{recipient['id']}", headers=ADMIN)
        assert resp.json()["data"]["isActive"] is False

        resp = client.delete(f"/admin/recipients/{recipient['id']}", headers=ADMIN)
        assert resp.json()["success"] is True
        assert client.patch(f"/admin/recipients/{recipient['id']}", headers=ADMIN).status_code == 404

    def test_inactive_recipient_gets_no_mail(self, client):
        form = _form_type(client)
        _template(client, form["id"])
        recipient = _recipient(client, form["id"])
        client.patch(f"/admin/recipients/{recipient['id']}", headers=ADMIN)
        raw_key = client.post("/admin/api-keys", json={"subdomain": "shop"}, headers=ADMIN).json()["data"]["rawApiKey"]

        with patch("aiosmtplib.send", new=AsyncMock(return_value=({}, "OK"))) as mock_send:
            resp = client.post(
                "/api/email/send",
                json={"formType": "contact", "variables": {}},
                headers={"x-api-key": raw_key},
            )

        assert resp.json()["success"] is False
        mock_send.assert_not_awaited()
