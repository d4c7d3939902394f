"""Email sending and log router."""

from __future__ import annotations

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import require_permission
from routers.rate_limit import rate_limit
from services.emails import list_email_logs_service, send_email_service

router = APIRouter()


class SendEmailRequest(BaseModel):
    recipient_email: EmailStr
    recipient_name: Optional[str] = None
    subject: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1)
    html_body: Optional[str] = None
    cc: List[EmailStr] = Field(default_factory=list, max_length=20)
    bcc: List[EmailStr] = Field(default_factory=list, max_length=20)

    @field_validator("subject", "recipient_name")
    @classmethod
    def _single_line_header(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and ("\r" in value or "\n" in value):
            raise ValueError("Header fields may not contain line breaks.")
        return value


@router.post("", status_code=201)
async def send_email(
    request: SendEmailRequest,
    _rate_limit: None = Depends(rate_limit("email_send", limit=60, window_seconds=3600)),
    user: User = Depends(require_permission("send emails")),
    db: AsyncSession = Depends(get_db),
):
    log = await send_email_service(user, request.model_dump(mode="json"), db)
    return {"message": "Email sent successfully", "data": log}


@router.get("")
async def list_email_logs(
    status: Optional[Literal["pending", "sent", "failed"]] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=15, ge=1, le=100),
    user: User = Depends(require_permission("view email logs")),
    db: AsyncSession = Depends(get_db),
):
    return await list_email_logs_service(user, db, status=status, page=page, limit=limit)
