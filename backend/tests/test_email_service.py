"""Tests for EmailService: template rendering, SMTP delivery and send logging.

aiosmtplib.send is patched; nothing leaves the process.
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import insert, select

from app.database import ConnectionPoolManager
from app.models.email_log import EmailLog
from app.models.form import EmailTemplate, FormType, NotificationRecipient
from app.services.email_service import EmailService, mask_email, render_template

SMTP = dict(
    smtp_host="smtp.test",
    smtp_port=587,
    smtp_username="mailer",
    smtp_password="secret",
    from_email="noreply@molochain.test",
    from_name="MOLOCHAIN",
)


@pytest_asyncio.fixture
async def pool(tmp_path):
    manager = ConnectionPoolManager(f"sqlite+aiosqlite:///{tmp_path / 'email.db'}")
    await manager.initialize()
    await manager.create_all()

    form_id = (
        await manager.execute_query(
            insert(FormType).values(name="Contact", slug="contact", is_active=True).returning(FormType.id)
        )
    )[0]["id"]
    await manager.execute_query(
        insert(FormType).values(name="Quote", slug="quote", is_active=True)
    )
    await manager.execute_query(
        insert(EmailTemplate).values(
            form_type_id=form_id,
            name="Contact",
            slug="contact-template",
            subject="Hello {{name}}",
            html_body="<p>{{message}}</p>",
            text_body="{{message}}",
            is_active=True,
        )
    )
    await manager.execute_query(
        insert(NotificationRecipient).values(form_type_id=form_id, email="ops@molochain.test", is_active=True)
    )
    yield manager
    await manager.shutdown()


async def _logs(pool) -> list[dict]:
    return await pool.execute_query(select(EmailLog.__table__).order_by(EmailLog.id))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestRenderTemplate:
    def test_substitutes_known_placeholders(self):
        assert render_template("Hi {{name}}, {{name}}!", {"name": "Ana"}) == "Hi Ana, Ana!"

    def test_unknown_placeholders_are_left(self):
        assert render_template("{{a}} {{b}}", {"a": "1"}) == "1 {{b}}"


class TestMaskEmail:
    def test_masks_local_part(self):
        assert mask_email("jane@example.com") == "j***@example.com"

    def test_malformed(self):
        assert mask_email("nobody") == "***@unknown"


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------


class TestSendEmail:
    @pytest.mark.asyncio
    async def test_unconfigured_returns_false_and_logs(self, pool):
        service = EmailService(pool)
        assert service.configured is False

        assert await service.send_email("jane@example.com", "Subject", "<p>x</p>") is False

        logs = await _logs(pool)
        assert len(logs) == 1
        assert logs[0]["status"] == "failed"
        assert logs[0]["recipient_email"] == "j***@example.com"

    @pytest.mark.asyncio
    async def test_success_sends_multipart_and_logs(self, pool):
        service = EmailService(pool, **SMTP)
        with patch("aiosmtplib.send", new=AsyncMock(return_value=({}, "OK"))) as mock_send:
            ok = await service.send_email("jane@example.com", "Subject", "<p>Body</p>", subdomain="shop")

        assert ok is True
        msg = mock_send.call_args.args[0]
        assert msg["To"] == "jane@example.com"
        assert msg["Subject"] == "Subject"
        assert "noreply@molochain.test" in msg["From"]
        kwargs = mock_send.call_args.kwargs
        assert kwargs["hostname"] == "smtp.test"
        assert kwargs["start_tls"] is True
        assert kwargs["use_tls"] is False

        logs = await _logs(pool)
        assert logs[0]["status"] == "sent"
        assert logs[0]["subdomain"] == "shop"

    @pytest.mark.asyncio
    async def test_port_465_uses_implicit_tls(self, pool):
        service = EmailService(pool, **{**SMTP, "smtp_port": 465})
        with patch("aiosmtplib.send", new=AsyncMock(return_value=({}, "OK"))) as mock_send:
            await service.send_email("jane@example.com", "s", "<p>b</p>")
        assert mock_send.call_args.kwargs["use_tls"] is True
        assert mock_send.call_args.kwargs["start_tls"] is False

    @pytest.mark.asyncio
    async def test_smtp_error_returns_false(self, pool):
        service = EmailService(pool, **SMTP)
        with patch("aiosmtplib.send", new=AsyncMock(side_effect=OSError("refused"))):
            ok = await service.send_email("jane@example.com", "Subject", "<p>Body</p>")

        assert ok is False
        logs = await _logs(pool)
        assert logs[0]["status"] == "failed"
        assert "refused" in logs[0]["error_message"]


class TestSendTemplateEmail:
    @pytest.mark.asyncio
    async def test_explicit_recipient(self, pool):
        service = EmailService(pool, **SMTP)
        with patch("aiosmtplib.send", new=AsyncMock(return_value=({}, "OK"))) as mock_send:
            ok = await service.send_template_email(
                "contact-template", {"name": "Ana", "message": "Hi"}, "ana@example.com"
            )

        assert ok is True
        msg = mock_send.call_args.args[0]
        assert msg["To"] == "ana@example.com"
        assert msg["Subject"] == "Hello Ana"

    @pytest.mark.asyncio
    async def test_falls_back_to_configured_recipients(self, pool):
        service = EmailService(pool, **SMTP)
        with patch("aiosmtplib.send", new=AsyncMock(return_value=({}, "OK"))) as mock_send:
            ok = await service.send_template_email("contact-template", {"name": "Ana", "message": "Hi"})

        assert ok is True
        assert mock_send.call_args.args[0]["To"] == "ops@molochain.test"

    @pytest.mark.asyncio
    async def test_unknown_template(self, pool):
        service = EmailService(pool, **SMTP)
        with patch("aiosmtplib.send", new=AsyncMock()) as mock_send:
            assert await service.send_template_email("missing", {}, "a@b.test") is False
        mock_send.assert_not_awaited()


class TestNotifyFormSubmission:
    @pytest.mark.asyncio
    async def test_unknown_form_type(self, pool):
        service = EmailService(pool, **SMTP)
        assert await service.notify_form_submission("nope", {"name": "x", "email": "x@y.z", "message": "m"}) is False

    @pytest.mark.asyncio
    async def test_no_recipients(self, pool):
        service = EmailService(pool, **SMTP)
        submission = {"name": "x", "email": "x@y.z", "message": "m"}
        with patch("aiosmtplib.send", new=AsyncMock()) as mock_send:
            assert await service.notify_form_submission("quote", submission) is False
        mock_send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_template_escapes_html(self, pool):
        await pool.execute_query("UPDATE email_templates SET is_active = 0")
        service = EmailService(pool, **SMTP)
        submission = {"name": "<b>Eve</b>", "email": "eve@example.com", "message": "line1\nline2"}

        with patch("aiosmtplib.send", new=AsyncMock(return_value=({}, "OK"))) as mock_send:
            ok = await service.notify_form_submission("contact", submission, subdomain="shop")

        assert ok is True
        msg = mock_send.call_args.args[0]
        assert msg["Subject"] == "New Form Submission: No subject"
        html_part = msg.get_payload()[1].get_payload(decode=True).decode()
        assert "&lt;b&gt;Eve&lt;/b&gt;" in html_part
        assert "line1<br>line2" in html_part
