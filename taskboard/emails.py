"""Outgoing email: smtplib transport, outbox log and message templates.

Every attempt is written to ``email_messages`` with status ``sent``,
``failed`` or ``skipped`` (SMTP not configured). Send failures are logged
and never propagate to the request that triggered them.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config
from .util import format_display_date, h, iso

logger = logging.getLogger(__name__)

FOOTER = "Project Management System"


def smtp_is_configured() -> bool:
    return bool(config.SMTP_HOST and config.SMTP_FROM)


def send_email(subject: str, text: str, html: str, to_email: str) -> Tuple[bool, str]:
    if not smtp_is_configured():
        return False, "SMTP not configured"

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = config.SMTP_FROM
    msg["To"] = to_email
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as smtp:
            if config.SMTP_USE_TLS:
                smtp.starttls()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
            smtp.send_message(msg)
        return True, ""
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)[:400]


def queue_and_send_email(
    conn,
    recipient_user_id: Optional[int],
    recipient_email: str,
    message: Tuple[str, str, str],
    related_entity: str = "",
    related_id: object = "",
) -> str:
    """Send a rendered ``(subject, text, html)`` message and record the outcome."""
    subject, text, html = message
    now = iso()
    sent_at = None
    error_message = ""
    if not recipient_email:
        return "skipped"
    if not smtp_is_configured():
        status = "skipped"
        error_message = "SMTP not configured"
    else:
        delivered, error = send_email(subject, text, html, recipient_email)
        if delivered:
            status = "sent"
            sent_at = now
        else:
            status = "failed"
            error_message = error
            logger.warning("Email to %s failed: %s", recipient_email, error)

    conn.execute(
        """
        INSERT INTO email_messages
        (recipient_user_id, recipient_email, subject, body, status, error_message, related_entity, related_id, created_at, sent_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            recipient_user_id,
            recipient_email,
            subject,
            text,
            status,
            error_message,
            related_entity,
            str(related_id or ""),
            now,
            sent_at,
        ),
    )
    return status


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _render(
    heading: str,
    name: str,
    paragraphs: Sequence[str],
    button: Optional[Tuple[str, str]] = None,
    detail_rows: Optional[List[Tuple[str, str]]] = None,
    note: str = "",
) -> Tuple[str, str]:
    """Build the plain-text and HTML bodies from the shared layout."""
    text_lines = [f"Hello {name},", ""]
    text_lines.extend(paragraphs)
    if detail_rows:
        text_lines.append("")
        text_lines.extend(f"{label}: {value}" for label, value in detail_rows)
    if button:
        text_lines.extend(["", f"{button[0]}: {button[1]}"])
    if note:
        text_lines.extend(["", note])
    text_lines.extend(["", FOOTER])

    parts = [
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">',
        '<div style="background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); padding: 30px; text-align: center;">',
        f'<h1 style="color: white; margin: 0; font-size: 28px;">{h(heading)}</h1>',
        "</div>",
        '<div style="padding: 30px; background: #f8f9fa;">',
        f'<h2 style="color: #333; margin-bottom: 20px;">Hello {h(name)},</h2>',
    ]
    for para in paragraphs:
        parts.append(f'<p style="color: #666; line-height: 1.6;">{h(para)}</p>')
    if detail_rows:
        parts.append('<div style="background: white; padding: 20px; border-radius: 8px; border-left: 4px solid #007bff;">')
        for label, value in detail_rows:
            parts.append(f'<p style="margin: 5px 0;"><strong>{h(label)}:</strong> {h(value)}</p>')
        parts.append("</div>")
    if button:
        parts.append(
            '<div style="text-align: center; margin: 30px 0;">'
            f'<a href="{h(button[1])}" style="background: #007bff; color: white; padding: 12px 30px; '
            f'text-decoration: none; border-radius: 5px; display: inline-block; font-weight: bold;">{h(button[0])}</a>'
            "</div>"
        )
    if note:
        parts.append(f'<p style="color: #666; line-height: 1.6; font-size: 14px;">{h(note)}</p>')
    parts.extend(
        [
            '<hr style="border: none; border-top: 1px solid #eee; margin: 30px 0;">',
            f'<p style="color: #999; font-size: 12px; text-align: center;">{FOOTER}</p>',
            "</div>",
            "</div>",
        ]
    )
    return "\n".join(text_lines), "\n".join(parts)


def project_url(project_id: object) -> str:
    return f"{config.CLIENT_URL}/project/{project_id}"


def password_reset_message(name: str, token: str) -> Tuple[str, str, str]:
    url = f"{config.CLIENT_URL}/reset-password/{token}"
    text, html = _render(
        "Password Reset",
        name,
        ["You requested a password reset for your Project Management System account."],
        button=("Reset Password", url),
        note="This link will expire in 15 minutes. If you didn't request this password reset, please ignore this email.",
    )
    return "Password Reset Request - Project Management System", text, html


def project_invitation_message(
    name: str, project: Dict[str, Any], inviter_name: str, token: Optional[str] = None
) -> Tuple[str, str, str]:
    if token:
        url = f"{config.CLIENT_URL}/invite/{token}"
        button = ("Create Account & Join Project", url)
        note = "Click the button above to create your account and join the project. This invitation will expire in 7 days."
    else:
        button = ("View Project", project_url(project["id"]))
        note = "You have been added to this project! Click the button above to view and start collaborating."
    text, html = _render(
        "Project Invitation",
        name,
        [f'{inviter_name} has invited you to join the project "{project["name"]}" on Project Management System.'],
        button=button,
        note=note,
    )
    subject = f'You\'ve been invited to join "{project["name"]}" - Project Management System'
    return subject, text, html


def welcome_message(name: str) -> Tuple[str, str, str]:
    text, html = _render(
        "Welcome!",
        name,
        [
            "Welcome to Project Management System! Your account has been created successfully.",
            "You can now start creating projects, managing tasks, and collaborating with your team.",
        ],
        button=("Get Started", config.CLIENT_URL),
    )
    return "Welcome to Project Management System", text, html


def _card_rows(card: Dict[str, Any], project: Dict[str, Any]) -> List[Tuple[str, str]]:
    return [
        ("Card", str(card.get("title") or "")),
        ("Project", str(project.get("name") or "")),
        ("Priority", str(card.get("priority") or "medium")),
        ("Due date", format_display_date(card.get("due_date"))),
    ]


def card_assigned_message(name: str, card: Dict[str, Any], project: Dict[str, Any], actor_name: str) -> Tuple[str, str, str]:
    text, html = _render(
        "New Card Assignment",
        name,
        [f'{actor_name} has assigned you to a card in the project "{project["name"]}".'],
        button=("View Card", project_url(project["id"])),
        detail_rows=_card_rows(card, project),
        note="Click the button above to view the card details and start working on your assigned task.",
    )
    return f'You\'ve been assigned to a card: "{card["title"]}" - {project["name"]}', text, html


def card_unassigned_message(name: str, card: Dict[str, Any], project: Dict[str, Any], actor_name: str) -> Tuple[str, str, str]:
    text, html = _render(
        "Card Assignment Removed",
        name,
        [f'{actor_name} has removed you from a card in the project "{project["name"]}".'],
        button=("View Card", project_url(project["id"])),
        detail_rows=_card_rows(card, project),
        note="You can still view the card if you have access to the project, but you're no longer assigned to it.",
    )
    return f'You\'ve been removed from a card: "{card["title"]}" - {project["name"]}', text, html


def status_changed_message(
    name: str, card: Dict[str, Any], project: Dict[str, Any], actor_name: str, old_label: str, new_label: str
) -> Tuple[str, str, str]:
    text, html = _render(
        "Card Status Updated",
        name,
        [f'{actor_name} moved "{card["title"]}" from {old_label} to {new_label}.'],
        button=("View Card", project_url(project["id"])),
        detail_rows=_card_rows(card, project),
    )
    return f'Card status changed: "{card["title"]}" - {project["name"]}', text, html


def mention_message(
    name: str, entity_title: str, project: Dict[str, Any], actor_name: str, comment_text: str
) -> Tuple[str, str, str]:
    text, html = _render(
        "You were mentioned",
        name,
        [f'{actor_name} mentioned you on "{entity_title}" in "{project["name"]}":', comment_text],
        button=("View Comment", project_url(project["id"])),
    )
    return f'{actor_name} mentioned you in "{entity_title}"', text, html


def project_update_message(
    name: str, project: Dict[str, Any], actor_name: str, changes: List[str]
) -> Tuple[str, str, str]:
    text, html = _render(
        "Project Updated",
        name,
        [f'{actor_name} updated the project "{project["name"]}".'] + [f"- {change}" for change in changes],
        button=("View Project", project_url(project["id"])),
    )
    return f'Project updated: "{project["name"]}"', text, html


def member_removed_message(name: str, project: Dict[str, Any], actor_name: str) -> Tuple[str, str, str]:
    text, html = _render(
        "Removed from Project",
        name,
        [f'{actor_name} removed you from the project "{project["name"]}".'],
        note="You no longer have access to this project's board.",
    )
    return f'You\'ve been removed from "{project["name"]}"', text, html


def credential_access_message(name: str, project: Dict[str, Any], actor_name: str) -> Tuple[str, str, str]:
    text, html = _render(
        "Credential Access Granted",
        name,
        [f'{actor_name} granted you access to the credentials of "{project["name"]}".'],
        button=("View Project", project_url(project["id"])),
        note="Keep these credentials private.",
    )
    return f'Credential access granted: "{project["name"]}"', text, html
