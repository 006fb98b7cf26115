"""Email notification service."""
from __future__ import annotations

import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional
from uuid import UUID

from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)

# Email configuration from environment variables
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
FROM_EMAIL = os.getenv("FROM_EMAIL", "") or (SMTP_USER or "")


def is_email_configured() -> bool:
    """
    Check if email service is configured.

    Returns:
        True if SMTP_USER and SMTP_PASSWORD are set, False otherwise
    """
    return bool(SMTP_USER and SMTP_PASSWORD)


def send_email(to: str, subject: str, body: str, html_body: Optional[str] = None) -> bool:
    """
    Send an email using SMTP with TLS.

    Args:
        to: Recipient email address
        subject: Email subject line
        body: Plain text email body
        html_body: Optional HTML body (email becomes multipart/alternative)

    Returns:
        True if email sent successfully, False otherwise
    """
    if not is_email_configured():
        logger.warning("[EMAIL] Email service not configured. Set SMTP_USER and SMTP_PASSWORD environment variables.")
        return False

    if not to:
        logger.error("[EMAIL] No recipient email address provided")
        return False

    try:
        msg = MIMEMultipart("alternative" if html_body else "mixed")
        msg["From"] = FROM_EMAIL or SMTP_USER or ""
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls()
            server.login(SMTP_USER or "", SMTP_PASSWORD or "")
            server.send_message(msg)

        logger.info("[EMAIL] Email sent successfully to %s", to)
        return True

    except smtplib.SMTPException as e:
        logger.error("[EMAIL] SMTP error sending email to %s: %s", to, e)
        return False
    except OSError as e:
        logger.error("[EMAIL] Connection error sending email to %s: %s", to, e)
        return False


def format_share_update(study_name: str, accession: str, changes: List[str], user_email: Optional[str]) -> str:
    lines = [f"The study {accession} ({study_name}) was updated"]
    if user_email:
        lines[0] += f" by {user_email}"
    lines[0] += ":"
    lines += [f"  - {change}" for change in changes]
    return "\n".join(lines)


def send_share_update(study_id: UUID, changes: List[str], user_id: Optional[UUID], db) -> int:
    """
    Notify every collaborator of a study about changes.

    Args:
        study_id: UUID of the study
        changes: Human-readable change descriptions
        user_id: User who made the changes
        db: Database session

    Returns:
        Number of emails sent
    """
    from ingest_orchestrator.database.models import Study, User

    study = db.query(Study).filter(Study.id == study_id).first()
    if not study:
        logger.error("[EMAIL] Study %s not found", study_id)
        return 0

    user = db.query(User).filter(User.id == user_id).first() if user_id else None
    body = format_share_update(study.name, study.accession, changes, user.email if user else None)
    subject = f"{study.accession}: study updated"

    sent = 0
    for share in study.shares:
        if send_email(share.email, subject, body):
            sent += 1
    logger.info("[EMAIL] Share update for %s sent to %d of %d collaborators", study.accession, sent, len(study.shares))
    return sent
