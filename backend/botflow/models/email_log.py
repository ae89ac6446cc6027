from datetime import datetime
from typing import Optional
from uuid import UUID
from enum import Enum
from pydantic import BaseModel, ConfigDict


class EmailStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class EmailLog(BaseModel):
    """
    Model for public.email_logs (bot 通知邮件的发送审计)
    """
    id: Optional[UUID] = None  # DB generated
    recipient: str
    subject: str
    template_name: str
    status: EmailStatus
    manuscript_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
