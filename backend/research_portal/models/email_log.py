from enum import Enum


class EmailStatus(str, Enum):
    """
    public.email_logs.status
    """
    SENT = "sent"
    FAILED = "failed"
