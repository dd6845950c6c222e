"""Transactional email delivery for the cross-subdomain email API.

Messages go out through one SMTP account configured with ``SMTP_HOST``,
``SMTP_PORT``, ``SMTP_USERNAME``, ``SMTP_PASSWORD`` and ``SMTP_FROM_EMAIL``.
Port 465 uses implicit TLS; any other port upgrades with STARTTLS unless
``SMTP_USE_TLS=false``.

Without a host or sender address the service runs unconfigured: each send is
logged at WARNING level and reported as not delivered, so the API can boot
in environments without mail.

Every delivery attempt is recorded in ``email_logs`` with the recipient
masked. Send helpers return booleans and never raise.
"""

import html
import logging
import re
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any

import aiosmtplib
from sqlalchemy import insert

from app.database import ConnectionPoolManager
from app.models.email_log import EMAIL_STATUS_FAILED, EMAIL_STATUS_SENT, EmailLog
from app.services import catalog

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_TAG = re.compile(r"<[^>]*>")

_SMTP_TIMEOUT_SECONDS = 30


def render_template(template: str, data: dict[str, str]) -> str:
    """Replace ``{{key}}`` placeholders; unknown keys are left as-is."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        return str(data[key]) if key in data else match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def mask_email(address: str) -> str:
    """``jane@example.com`` -> ``j***@example.com``."""
    local, sep, domain = address.partition("@")
    if not sep or not domain:
        return "***@unknown"
    return f"{local[:1]}***@{domain}"


class EmailService:
    """Renders templates and sends them over SMTP via aiosmtplib."""

    def __init__(
        self,
        pool: ConnectionPoolManager,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_username: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "",
        reply_to: str = "",
        use_tls: bool = True,
    ) -> None:
        self._pool = pool
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._smtp_username = smtp_username
        self._smtp_password = smtp_password
        self._from_email = from_email
        self._from_name = from_name
        self._reply_to = reply_to
        self._use_tls = use_tls
        self._configured = bool(smtp_host and from_email)

        if not self._configured:
            logger.info("Email service: SMTP not configured - emails will be logged only")

    @classmethod
    def from_settings(cls, pool: ConnectionPoolManager, settings) -> "EmailService":
        return cls(
            pool,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_username=settings.smtp_username,
            smtp_password=settings.smtp_password,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
            reply_to=settings.smtp_reply_to,
            use_tls=settings.smtp_use_tls,
        )

    @property
    def configured(self) -> bool:
        return self._configured

    def _tls_options(self) -> dict[str, bool]:
        if self._smtp_port == 465:
            return {"use_tls": True, "start_tls": False}
        return {"use_tls": False, "start_tls": self._use_tls}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def test_connection(self) -> dict[str, Any]:
        """Open an SMTP session (and log in when credentials exist)."""
        if not self._configured:
            return {"success": False, "message": "No email settings configured"}

        smtp = aiosmtplib.SMTP(
            hostname=self._smtp_host,
            port=self._smtp_port,
            timeout=_SMTP_TIMEOUT_SECONDS,
            **self._tls_options(),
        )
        try:
            await smtp.connect()
            if self._smtp_username and self._smtp_password:
                await smtp.login(self._smtp_username, self._smtp_password)
            await smtp.quit()
        except Exception as exc:
            logger.error("Email connection test failed: %s", exc)
            return {"success": False, "message": f"Connection failed: {exc}"}

        logger.info("Email connection test successful", extra={"smtp_host": self._smtp_host})
        return {"success": True, "message": "Connection verified successfully"}

    async def send_template_email(
        self,
        template_slug: str,
        data: dict[str, str],
        to_email: str | None = None,
        *,
        subdomain: str | None = None,
        form_type: str | None = None,
    ) -> bool:
        """Render an active template and send it.

        Without ``to_email`` the template's form-type recipients are used.
        Returns False when the template is missing, nobody would receive the
        mail, or any single delivery fails.
        """
        try:
            async with self._pool.connection() as conn:
                template = await catalog.get_active_template_by_slug(conn, template_slug)
                if template is None:
                    logger.warning("Email template not found", extra={"template_slug": template_slug})
                    return False
                if to_email:
                    recipients = [to_email]
                else:
                    recipients = await catalog.get_recipients(conn, template["form_type_id"])
        except Exception:
            logger.exception("Failed to load email template", extra={"template_slug": template_slug})
            return False

        if not recipients:
            logger.warning("No recipients found for template", extra={"template_slug": template_slug})
            return False

        return await self._deliver_all(
            recipients,
            template,
            data,
            subdomain=subdomain,
            form_type=form_type,
        )

    async def notify_form_submission(
        self,
        form_type_slug: str,
        submission: dict[str, str | None],
        subdomain: str | None = None,
    ) -> bool:
        """Tell a form type's recipients about a new submission.

        ``submission`` carries ``name``, ``email``, ``message`` and an
        optional ``subject``. Falls back to a built-in notification when the
        form type has no active template.
        """
        try:
            async with self._pool.connection() as conn:
                form = await catalog.get_active_form_type(conn, form_type_slug)
                if form is None:
                    logger.warning("Form type not found", extra={"form_type": form_type_slug})
                    return False
                template = await catalog.get_active_template(conn, form["id"])
                recipients = await catalog.get_recipients(conn, form["id"])
        except Exception:
            logger.exception("Failed to load form type", extra={"form_type": form_type_slug})
            return False

        if not recipients:
            logger.warning("No recipients for form type", extra={"form_type": form_type_slug})
            return False

        data = {
            "name": submission.get("name") or "",
            "email": submission.get("email") or "",
            "subject": submission.get("subject") or "No subject",
            "message": submission.get("message") or "",
            "form_type": form["name"],
        }
        html_data = None
        if template is None:
            logger.warning("No email template for form type, using default", extra={"form_type": form_type_slug})
            template = _default_submission_template()
            html_data = {key: html.escape(value) for key, value in data.items()}
            html_data["message"] = html_data["message"].replace("\n", "<br>")

        success = await self._deliver_all(
            recipients,
            template,
            data,
            subdomain=subdomain,
            form_type=form_type_slug,
            html_data=html_data,
        )
        logger.info(
            "Form submission notification processed",
            extra={"form_type": form_type_slug, "recipient_count": len(recipients), "success": success},
        )
        return success

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
        *,
        template_slug: str | None = None,
        form_type: str | None = None,
        subdomain: str | None = None,
    ) -> bool:
        """Send one message and record the attempt. Never raises."""
        if not self._configured:
            logger.warning(
                "EMAIL (no SMTP configured) -> %s | Subject: %s", mask_email(to), subject
            )
            await self._log_attempt(to, EMAIL_STATUS_FAILED, "SMTP not configured", template_slug, form_type, subdomain)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self._from_name, self._from_email)) if self._from_name else self._from_email
        msg["To"] = to
        msg["Reply-To"] = self._reply_to or self._from_email

        # Plain-text first, HTML second (preferred by clients)
        msg.attach(MIMEText(text_body or _TAG.sub("", html_body), "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self._smtp_host,
                port=self._smtp_port,
                username=self._smtp_username or None,
                password=self._smtp_password or None,
                timeout=_SMTP_TIMEOUT_SECONDS,
                **self._tls_options(),
            )
        except Exception as exc:
            logger.error("Failed to send email to %s: %s", mask_email(to), exc, exc_info=True)
            await self._log_attempt(to, EMAIL_STATUS_FAILED, str(exc), template_slug, form_type, subdomain)
            return False

        logger.info("Email sent -> %s | Subject: %s", mask_email(to), subject)
        await self._log_attempt(to, EMAIL_STATUS_SENT, None, template_slug, form_type, subdomain)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _deliver_all(
        self,
        recipients: list[str],
        template: dict[str, Any],
        data: dict[str, str],
        *,
        subdomain: str | None,
        form_type: str | None,
        html_data: dict[str, str] | None = None,
    ) -> bool:
        subject = render_template(template["subject"], data)
        html_body = render_template(template["html_body"], html_data or data)
        text_body = render_template(template["text_body"], data) if template.get("text_body") else None

        success = True
        for recipient in recipients:
            sent = await self.send_email(
                recipient,
                subject,
                html_body,
                text_body,
                template_slug=template.get("slug"),
                form_type=form_type,
                subdomain=subdomain,
            )
            success = success and sent
        return success

    async def _log_attempt(
        self,
        recipient: str,
        status: str,
        error_message: str | None,
        template_slug: str | None,
        form_type: str | None,
        subdomain: str | None,
    ) -> None:
        try:
            await self._pool.execute_query(
                insert(EmailLog).values(
                    template_slug=template_slug,
                    recipient_email=mask_email(recipient),
                    form_type=form_type,
                    status=status,
                    error_message=error_message,
                    subdomain=subdomain,
                )
            )
        except Exception:
            logger.error("Failed to record email attempt", exc_info=True)


def _default_submission_template() -> dict[str, Any]:
    """Built-in notification used when a form type has no template.

    Submission values are HTML-escaped before substitution because they come
    straight from a public form.
    """
    return {
        "slug": None,
        "subject": "New Form Submission: {{subject}}",
        "html_body": (
            "<h2>New Form Submission</h2>"
            "<p><strong>Form:</strong> {{form_type}}</p>"
            "<p><strong>From:</strong> {{name}} ({{email}})</p>"
            "<p><strong>Subject:</strong> {{subject}}</p>"
            "<p><strong>Message:</strong></p>"
            '<div style="padding: 15px; background: #f5f5f5; border-radius: 5px;">{{message}}</div>'
        ),
        "text_body": (
            "New form submission ({{form_type}})\n\n"
            "From: {{name}} <{{email}}>\n"
            "Subject: {{subject}}\n\n"
            "{{message}}"
        ),
    }
