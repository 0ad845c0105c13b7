"""
Outbound email for payslips.

EMAIL_PROVIDER selects the transport: ``resend`` (HTTP API), ``smtp``,
``log`` (write to the app log, for local runs) or ``disabled``. Every
failure surfaces as ExternalDeliveryFailure so callers can record it per
recipient.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

import requests
from flask import current_app, render_template

from payroll_api.common.errors import ExternalDeliveryFailure

log = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


@dataclass
class EmailSendResult:
    provider: str
    message_id: Optional[str] = None


def send_email(*, to_address: str, subject: str, html: str, text: Optional[str] = None,
               config=None) -> EmailSendResult:
    cfg = config if config is not None else current_app.config
    provider = (cfg.get("EMAIL_PROVIDER") or "disabled").lower()
    if provider in {"disabled", "none"}:
        raise ExternalDeliveryFailure("EMAIL_PROVIDER disabled")
    if not to_address:
        raise ExternalDeliveryFailure("Recipient has no email address")
    if not cfg.get("EMAIL_FROM"):
        raise ExternalDeliveryFailure("EMAIL_FROM not configured")

    if provider == "resend":
        return _send_resend(cfg, to_address=to_address, subject=subject, html=html, text=text)
    if provider == "smtp":
        return _send_smtp(cfg, to_address=to_address, subject=subject, html=html, text=text)
    if provider == "log":
        log.info("email (log provider) to=%s subject=%r bytes=%d", to_address, subject, len(html))
        return EmailSendResult(provider="log")

    raise ExternalDeliveryFailure(f"Unsupported EMAIL_PROVIDER: {provider}")


def _send_resend(cfg, *, to_address, subject, html, text) -> EmailSendResult:
    api_key = cfg.get("EMAIL_API_KEY")
    if not api_key:
        raise ExternalDeliveryFailure("EMAIL_API_KEY not configured for Resend")
    payload = {
        "from": cfg["EMAIL_FROM"],
        "to": [to_address],
        "subject": subject,
        "html": html,
    }
    if text:
        payload["text"] = text
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    try:
        resp = requests.post(RESEND_URL, json=payload, headers=headers,
                             timeout=cfg.get("EMAIL_TIMEOUT_SECONDS", 15))
    except requests.RequestException as e:
        raise ExternalDeliveryFailure(f"Resend unreachable: {e}")
    if resp.status_code >= 400:
        raise ExternalDeliveryFailure(f"Resend error: {resp.status_code} {resp.text[:200]}")
    data = resp.json() if resp.content else {}
    return EmailSendResult(provider="resend", message_id=data.get("id"))


def _send_smtp(cfg, *, to_address, subject, html, text) -> EmailSendResult:
    host = cfg.get("SMTP_HOST")
    if not host:
        raise ExternalDeliveryFailure("SMTP_HOST not configured")
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = cfg["EMAIL_FROM"]
    message["To"] = to_address
    message.set_content(text or "This email requires an HTML-capable client.")
    message.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(host, int(cfg.get("SMTP_PORT") or 587), timeout=15) as server:
            if cfg.get("SMTP_USE_TLS", True):
                server.starttls()
            if cfg.get("SMTP_USERNAME") and cfg.get("SMTP_PASSWORD"):
                server.login(cfg["SMTP_USERNAME"], cfg["SMTP_PASSWORD"])
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as e:
        raise ExternalDeliveryFailure(f"SMTP error: {e}")
    return EmailSendResult(provider="smtp")


class PayslipMailer:
    """Renders the payslip email and hands it to ``send_email``."""

    def __init__(self, transport=send_email):
        self.transport = transport

    def __call__(self, payslip) -> Optional[str]:
        snap = payslip.employee_snapshot or {}
        to_address = snap.get("email") or (payslip.employee.email if payslip.employee else None)
        period = payslip.period_start.strftime("%B %Y")
        html = render_template("payroll/payslip_email.html", payslip=payslip, employee=snap, period=period)
        text = (f"Hello {snap.get('name') or ''},\n\nYour payslip for {period} is ready. "
                f"Net pay: {payslip.net}.\n")
        result = self.transport(to_address=to_address, subject=f"Your payslip for {period}",
                                html=html, text=text)
        return result.message_id
