"""Credit-gated email sending and the SMTP transport behind it."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
import logging
from typing import Any, Dict, List, Optional
import uuid

import aiosmtplib
from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.email_log import EmailLog
from models.user import User
from services.credits import consume_credits, reject_insufficient_credits, release_credits
from services.permissions import has_permission

logger = logging.getLogger(__name__)


class MailTransportError(RuntimeError):
    """Raised when an outbound message could not be handed to the mail server."""


@dataclass
class OutboundEmail:
    to_address: str
    subject: str
    body: str
    to_name: Optional[str] = None
    html_body: Optional[str] = None
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)


def build_message(email: OutboundEmail) -> EmailMessage:
    message = EmailMessage()
    message["From"] = f"{settings.MAIL_FROM_NAME} <{settings.MAIL_FROM_ADDRESS}>"
    message["To"] = f"{email.to_name} <{email.to_address}>" if email.to_name else email.to_address
    message["Subject"] = email.subject
    if email.cc:
        message["Cc"] = ", ".join(email.cc)
    message.set_content(email.body, charset="utf-8")
    if email.html_body:
        message.add_alternative(email.html_body, subtype="html", charset="utf-8")
    return message


async def deliver_email(email: OutboundEmail) -> None:
    """Send one message through the configured SMTP server."""
    if not settings.SMTP_HOST:
        raise MailTransportError("Mail transport is not configured.")

    message = build_message(email)
    recipients = [email.to_address, *email.cc, *email.bcc]
    try:
        await aiosmtplib.send(
            message,
            recipients=recipients,
            hostname=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME or None,
            password=settings.SMTP_PASSWORD or None,
            start_tls=settings.SMTP_USE_TLS,
            timeout=settings.SMTP_TIMEOUT,
        )
    except aiosmtplib.SMTPException as exc:
        raise MailTransportError(str(exc)) from exc


def serialize_email_log(log: EmailLog) -> Dict[str, Any]:
    metadata = log.metadata_json or {}
    return {
        "id": log.id,
        "sent_by": log.sent_by,
        "recipient_email": log.recipient_email,
        "recipient_name": log.recipient_name,
        "subject": log.subject,
        "status": log.status,
        "error_message": log.error_message,
        "cc": metadata.get("cc", []),
        "bcc": metadata.get("bcc", []),
        "sent_at": log.sent_at.isoformat() if log.sent_at else None,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


async def send_email_service(actor: User, payload: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Consume one email credit, record the attempt, then deliver.

    The credit and the pending log commit together before delivery so the row
    lock is not held across the SMTP round trip. A failed delivery refunds the
    credit and keeps the log as `failed`.
    """
    actor_id = actor.id
    try:
        if not await consume_credits(actor, "email", db):
            await reject_insufficient_credits(actor, "email", db, message="Insufficient credits to send email")

        email_log = EmailLog(
            id=str(uuid.uuid4()),
            sent_by=actor_id,
            recipient_email=payload["recipient_email"],
            recipient_name=payload.get("recipient_name"),
            subject=payload["subject"],
            body=payload["body"],
            html_body=payload.get("html_body"),
            status="pending",
            metadata_json={"cc": payload.get("cc") or [], "bcc": payload.get("bcc") or []},
        )
        db.add(email_log)
        await db.commit()
    except HTTPException:
        raise
    except Exception:
        await db.rollback()
        raise

    log_id = email_log.id
    try:
        outbound = OutboundEmail(
            to_address=email_log.recipient_email,
            to_name=email_log.recipient_name,
            subject=email_log.subject,
            body=email_log.body,
            html_body=email_log.html_body,
            cc=list(payload.get("cc") or []),
            bcc=list(payload.get("bcc") or []),
        )
        await deliver_email(outbound)
    except Exception as exc:
        # The credit is already committed; any delivery failure refunds it.
        email_log.status = "failed"
        email_log.error_message = str(exc)
        await release_credits(actor, "email", db)
        await db.commit()
        await db.refresh(email_log)
        logger.error("email_send_failed log=%s user=%s error=%s", log_id, actor_id, exc)
        raise HTTPException(
            status_code=502,
            detail={
                "message": "Failed to send email",
                "error": str(exc),
                "email_log": serialize_email_log(email_log),
            },
        ) from exc

    email_log.status = "sent"
    email_log.sent_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(email_log)
    logger.info("email_sent log=%s user=%s recipient=%s", email_log.id, actor_id, email_log.recipient_email)
    return serialize_email_log(email_log)


async def list_email_logs_service(
    actor: User,
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 15,
) -> Dict[str, Any]:
    filters = []
    if not has_permission(actor, "view all email logs"):
        filters.append(EmailLog.sent_by == actor.id)
    if status:
        filters.append(EmailLog.status == status)

    total = await db.execute(select(func.count(EmailLog.id)).where(*filters))
    result = await db.execute(
        select(EmailLog)
        .where(*filters)
        .order_by(EmailLog.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "items": [serialize_email_log(log) for log in result.scalars().all()],
        "total_count": int(total.scalar() or 0),
        "page": page,
        "limit": limit,
    }
