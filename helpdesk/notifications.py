"""Outgoing email for ticket events and password resets.

Sending is best effort. Without ``SMTP_USER`` every message is skipped with a
log line, and a failing mail server is logged but never fails the request that
triggered the message.
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from html import escape
from urllib.parse import urlencode

from helpdesk.config import get_settings
from helpdesk.models import Ticket, User


logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 10


def send_email(to: str | None, subject: str, html: str) -> bool:
    settings = get_settings()
    if not to:
        return False
    if not settings.email_enabled:
        logger.info("Email notification skipped - SMTP not configured (%s)", subject)
        return False

    message = MIMEText(html, "html", "utf-8")
    message["Subject"] = subject
    message["From"] = settings.smtp_from or settings.smtp_user
    message["To"] = to

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(message)
    except (smtplib.SMTPException, OSError):
        logger.exception("Email to %s failed: %s", to, subject)
        return False

    logger.info("Email sent to %s: %s", to, subject)
    return True


def ticket_recipient(ticket: Ticket) -> str | None:
    if ticket.created_by is not None:
        return ticket.created_by.email
    return ticket.requester_email


def notify_ticket_created(ticket: Ticket) -> bool:
    department = ticket.department.name if ticket.department else "Unassigned"
    html = (
        "<h2>Your ticket has been received</h2>"
        f"<p><strong>Ticket:</strong> {ticket.ticket_number}</p>"
        f"<p><strong>Title:</strong> {escape(ticket.title)}</p>"
        f"<p><strong>Department:</strong> {escape(department)}</p>"
        f"<p><strong>Priority:</strong> {ticket.priority}</p>"
        f"<p><strong>Created at:</strong> {ticket.created_at:%Y-%m-%d %H:%M} UTC</p>"
    )
    return send_email(ticket_recipient(ticket), f"Ticket {ticket.ticket_number} created: {ticket.title}", html)


def notify_ticket_resolved(ticket: Ticket) -> bool:
    solver = ticket.solved_by.name if ticket.solved_by else "Support"
    html = (
        "<h2>Your ticket has been resolved</h2>"
        f"<p><strong>Ticket:</strong> {ticket.ticket_number}</p>"
        f"<p><strong>Title:</strong> {escape(ticket.title)}</p>"
        f"<p><strong>Solution:</strong> {escape(ticket.solution or '')}</p>"
        f"<p><strong>Resolved by:</strong> {escape(solver)}</p>"
    )
    return send_email(ticket_recipient(ticket), f"Ticket {ticket.ticket_number} resolved: {ticket.title}", html)


def reset_link(token: str) -> str:
    return f"{get_settings().client_url}/reset-password?{urlencode({'token': token})}"


def send_password_reset(user: User, token: str) -> bool:
    link = reset_link(token)
    html = (
        "<h2>Password reset</h2>"
        f"<p>Hello {escape(user.name)},</p>"
        f'<p>Use <a href="{link}">this link</a> to choose a new password. '
        f"It expires in {get_settings().reset_token_expire_minutes} minutes.</p>"
        "<p>If you did not ask for a reset you can ignore this email.</p>"
    )
    return send_email(user.email, "Reset your helpdesk password", html)
