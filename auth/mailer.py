"""
auth/mailer.py -- Email Transport collaborator and OTP message templates.

The lifecycle core only depends on the EmailTransport protocol:
    send(to, subject, html_body) -> bool
Returning False (rather than raising) is the contract: the orchestrator
decides what a failed delivery means for each flow (rollback at
registration, a surfaced Unavailable everywhere else).

SmtpEmailTransport resolves credentials per send through an injected
ConfigProvider, so an operator editing the app_config row takes effect on the
next email without a restart. Empty config fields fall back to Settings.

Port 465 uses implicit TLS (SMTP_SSL); anything else uses STARTTLS.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from auth.models import AppConfig, OtpPurpose
from core.config import Settings, get_settings

logger = logging.getLogger("gatekeeper.mailer")


class ConfigProvider(Protocol):
    def get_app_config(self) -> AppConfig: ...


class EmailTransport(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> bool: ...


class SmtpEmailTransport:
    """Deliver HTML email over SMTP. Never raises; logs and returns False on failure."""

    def __init__(self, config_provider: ConfigProvider, settings: Settings | None = None) -> None:
        self._config_provider = config_provider
        self._settings = settings or get_settings()

    def send(self, to: str, subject: str, html_body: str) -> bool:
        cfg = self._config_provider.get_app_config()
        host = cfg.smtp_host or self._settings.smtp_host
        port = cfg.smtp_port or self._settings.smtp_port
        user = cfg.smtp_user or self._settings.smtp_user
        password = cfg.smtp_password or self._settings.smtp_password
        sender = self._settings.mail_from or user
        if not (host and port and user and password and sender):
            logger.error("SMTP configuration incomplete; cannot send to %s", to)
            return False

        msg = EmailMessage()
        msg["From"] = f"{company_name(cfg, self._settings)} <{sender}>"
        msg["To"] = to
        msg["Subject"] = subject
        if cfg.company_email:
            msg["Reply-To"] = cfg.company_email
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html_body, subtype="html")

        timeout = self._settings.smtp_timeout_seconds
        context = ssl.create_default_context()
        try:
            if port == 465:
                with smtplib.SMTP_SSL(host, port, context=context, timeout=timeout) as server:
                    server.login(user, password)
                    server.send_message(msg, from_addr=sender, to_addrs=[to])
            else:
                with smtplib.SMTP(host, port, timeout=timeout) as server:
                    server.starttls(context=context)
                    server.login(user, password)
                    server.send_message(msg, from_addr=sender, to_addrs=[to])
        except (smtplib.SMTPException, OSError):
            logger.exception("Email delivery to %s failed", to)
            return False
        logger.info("Email '%s' delivered to %s", subject, to)
        return True


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def company_name(cfg: AppConfig, settings: Settings | None = None) -> str:
    return cfg.company_name or (settings or get_settings()).company_name


def render_otp_email(
    cfg: AppConfig, purpose: OtpPurpose, code: str, ttl_minutes: int, resend: bool = False
) -> tuple[str, str]:
    """Return (subject, html_body) for an OTP email.

    The code is always exactly four ASCII digits; the company name comes from
    operator config and is escaped.
    """
    raw_name = company_name(cfg)
    name = html.escape(raw_name)
    if purpose == OtpPurpose.registration:
        if resend:
            subject = f"New Verification Code - {raw_name}"
            heading = f"{name} - New Verification Code"
            lead = "Your new verification code is"
        else:
            subject = f"Verify Your Account - {raw_name}"
            heading = f"Welcome to {name}!"
            lead = "Your verification code is"
        footer = "If you didn't create an account, please ignore this email."
    else:
        if resend:
            subject = f"New Password Reset Code - {raw_name}"
            heading = f"{name} - New Password Reset Code"
            lead = "Your new password reset code is"
        else:
            subject = f"Password Reset Code - {raw_name}"
            heading = f"Password Reset - {name}"
            lead = "Your password reset code is"
        footer = "If you didn't request this, please ignore this email."

    body = (
        f"<h2>{heading}</h2>"
        f"<p>{lead}: <strong>{code}</strong></p>"
        f"<p>This code will expire in {ttl_minutes} minutes.</p>"
        f"<p>{footer}</p>"
        f"<p>Best regards,<br>{name}</p>"
    )
    return subject, body
