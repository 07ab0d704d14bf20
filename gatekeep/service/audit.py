from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from gatekeep.logging import get_logger, redact_email

logger = get_logger("gatekeep.audit")


class AuditAction(str, Enum):
    REGISTER = "register"
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    PASSWORD_CHANGED = "password_changed"
    EMAIL_VERIFIED = "email_verified"
    ADMIN_CREATED = "admin_created"
    ACCOUNT_UPDATED = "account_updated"
    ACCOUNT_DELETED = "account_deleted"


class AuditLogger:
    """Writes auth events to the structured log.

    Auditing must never break the flow that triggered it, so failures while
    recording are logged and swallowed.
    """

    def __init__(self, sink: Any = None) -> None:
        self._log = sink or logger

    def log_auth(
        self,
        action: AuditAction,
        *,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        **details: Any,
    ) -> None:
        try:
            self._log.info(
                "audit_event",
                action=action.value,
                account_id=account_id,
                mailbox=redact_email(email) if email else None,
                **details,
            )
        except Exception as exc:
            logger.error("audit_log_failed", action=action.value, error=str(exc))
