"""Composition and SMTP delivery of notification emails."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Any, Iterable

from app.core.config import settings
from app.models.enums import NotificationPriority

logger = logging.getLogger(__name__)

_PRIORITY_LABELS = {
    NotificationPriority.CRITICAL: "CRITICAL",
    NotificationPriority.HIGH: "HIGH",
    NotificationPriority.MEDIUM: "MEDIUM",
    NotificationPriority.LOW: "LOW",
    NotificationPriority.INFO: "INFO",
}

_PRIORITY_COLORS = {
    NotificationPriority.CRITICAL: "#dc2626",
    NotificationPriority.HIGH: "#ea580c",
    NotificationPriority.MEDIUM: "#2563eb",
    NotificationPriority.LOW: "#0891b2",
    NotificationPriority.INFO: "#64748b",
}


def _priority(value: Any) -> NotificationPriority:
    try:
        return NotificationPriority(int(value))
    except (TypeError, ValueError):
        return NotificationPriority.MEDIUM


def _wrap_email_html(*, title: str, intro: str, content: str, footer: str) -> str:
    return f"""\
<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{escape(title)}</title>
  </head>
  <body style="margin:0;padding:0;background:#f1f5f9;font-family:Arial,sans-serif;color:#0f172a;">
    <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="padding:24px 12px;">
      <tr>
        <td align="center">
          <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="max-width:620px;background:#ffffff;border-radius:12px;border:1px solid #e2e8f0;overflow:hidden;">
            <tr>
              <td style="padding:20px 24px;background:#1d4ed8;color:#ffffff;">
                <h1 style="margin:0;font-size:20px;line-height:1.3;">{escape(title)}</h1>
              </td>
            </tr>
            <tr>
              <td style="padding:24px;">
                <p style="margin:0 0 14px;font-size:15px;line-height:1.6;">{escape(intro)}</p>
                {content}
              </td>
            </tr>
            <tr>
              <td style="padding:16px 24px;background:#f8fafc;border-top:1px solid #e2e8f0;">
                <p style="margin:0;font-size:12px;line-height:1.6;color:#475569;">{escape(footer)}</p>
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>
"""


def _cta_button(label: str, href: str) -> str:
    return (
        '<p style="margin:20px 0;">'
        f'<a href="{escape(href, quote=True)}" '
        'style="display:inline-block;background:#1d4ed8;color:#ffffff;text-decoration:none;'
        'padding:12px 18px;border-radius:8px;font-weight:600;font-size:14px;">'
        f"{escape(label)}</a></p>"
    )


def _badge(priority: NotificationPriority) -> str:
    return (
        f'<span style="display:inline-block;padding:2px 8px;border-radius:999px;font-size:11px;'
        f'font-weight:700;color:#ffffff;background:{_PRIORITY_COLORS[priority]};">'
        f"{_PRIORITY_LABELS[priority]}</span>"
    )


def build_notification_email(notification: Any, recipient_name: str) -> tuple[str, str, str]:
    priority = _priority(notification.priority)
    link = f"{settings.FRONTEND_BASE_URL}/notifications"
    subject = f"[MedCure] {notification.title}"
    body = (
        f"Hello {recipient_name},\n\n"
        f"{_PRIORITY_LABELS[priority]}: {notification.title}\n\n"
        f"{notification.message}\n\n"
        f"Open the notification center: {link}"
    )
    html_content = (
        f'<p style="margin:0 0 12px;font-size:14px;color:#334155;">Hello {escape(recipient_name)},</p>'
        f'<p style="margin:0 0 8px;">{_badge(priority)}</p>'
        f'<p style="margin:0 0 8px;font-size:16px;font-weight:700;">{escape(notification.title)}</p>'
        f'<p style="margin:0 0 14px;font-size:14px;color:#334155;line-height:1.6;">{escape(notification.message)}</p>'
        f"{_cta_button('Open notifications', link)}"
    )
    html_body = _wrap_email_html(
        title="MedCure Pharmacy Alert",
        intro="A notification requires your attention.",
        content=html_content,
        footer="This message was sent automatically by MedCure. Do not reply.",
    )
    return subject, body, html_body


def build_health_summary_email(recipient_name: str, items: Iterable[Any]) -> tuple[str, str, str]:
    """Summarise one health sweep for a single recipient.

    ``items`` are the notifications admitted for that recipient during the sweep.
    """
    entries = sorted(items, key=lambda item: int(item.priority))
    critical = sum(1 for item in entries if _priority(item.priority) == NotificationPriority.CRITICAL)
    high = sum(1 for item in entries if _priority(item.priority) == NotificationPriority.HIGH)
    if critical:
        level = "CRITICAL"
    elif high:
        level = "WARNING"
    else:
        level = "INFO"
    link = f"{settings.FRONTEND_BASE_URL}/notifications"
    subject = f"[MedCure] {level} - Pharmacy Health Report ({len(entries)} issues)"
    lines = [f"- [{_PRIORITY_LABELS[_priority(item.priority)]}] {item.title}: {item.message}" for item in entries]
    body = (
        f"Hello {recipient_name},\n\n"
        f"The latest inventory health check found {len(entries)} issues "
        f"({critical} critical, {high} high).\n\n" + "\n".join(lines) + f"\n\nReview them here: {link}"
    )
    rows = "".join(
        '<tr>'
        f'<td style="padding:8px 0;border-bottom:1px solid #e2e8f0;vertical-align:top;">{_badge(_priority(item.priority))}</td>'
        '<td style="padding:8px 0 8px 10px;border-bottom:1px solid #e2e8f0;font-size:13px;color:#334155;">'
        f"<strong>{escape(item.title)}</strong><br>{escape(item.message)}</td>"
        "</tr>"
        for item in entries
    )
    html_content = (
        f'<p style="margin:0 0 12px;font-size:14px;color:#334155;">Hello {escape(recipient_name)},</p>'
        '<table role="presentation" width="100%" cellpadding="0" cellspacing="0">'
        f"{rows}</table>"
        f"{_cta_button('Review inventory', link)}"
    )
    html_body = _wrap_email_html(
        title="Pharmacy Health Report",
        intro=f"{len(entries)} inventory issues found ({critical} critical, {high} high).",
        content=html_content,
        footer="This report is generated by the scheduled MedCure health check.",
    )
    return subject, body, html_body


def send_email(to: str, subject: str, body: str, *, html_body: str | None = None) -> bool:
    if not settings.SMTP_HOST:
        logger.info("SMTP not configured; skipping send to %s", to)
        return False
    if not settings.SMTP_FROM:
        logger.warning("SMTP_FROM not configured; skipping send to %s", to)
        return False

    message = EmailMessage()
    message["From"] = settings.SMTP_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    if html_body:
        message.add_alternative(html_body, subtype="html")

    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as server:
            server.ehlo()
            if settings.SMTP_TLS:
                server.starttls()
                server.ehlo()
            if settings.SMTP_USER:
                server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.send_message(message)
        logger.info("Email sent: %s", to)
        return True
    except (smtplib.SMTPException, OSError):
        logger.exception("Email send failed: %s", to)
        return False
