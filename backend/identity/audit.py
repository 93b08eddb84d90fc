"""
Identity Core - Audit Trail

Every account creation, link, bind and merge is logged and persisted to
the ``identity_audit_log`` collection.

Never logs plaintext email, phone, password or provider tokens. Only
account ids, member ids, match types and operation metadata.
"""

import uuid
import logging
from typing import Optional, Dict, Any

from .models import AUDIT_LOG, utcnow, to_iso
from .storage import DocumentStore

logger = logging.getLogger(__name__)


class IdentityAuditEvent:
    """Audit event types for identity operations (dot notation)."""
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_LOGIN = "account.login"
    ACCOUNT_LOGIN_FAILED = "account.login_failed"
    LINK_STARTED = "link.started"
    LINK_BOUND = "link.bound"
    LINK_CREATED = "link.created"
    LINK_REJECTED = "link.rejected"
    PHONE_BOUND = "phone.bound"
    MEMBER_ID_ASSIGNED = "member_id.assigned"
    MERGE_STARTED = "merge.started"
    MERGE_COMPLETED = "merge.completed"
    MERGE_FAILED = "merge.failed"
    MERGE_ESCALATED = "merge.escalated"
    MERGE_CANCELLED = "merge.cancelled"


PII_FIELDS = ('email', 'phone', 'password', 'display_name', 'name', 'token', 'photo_url')


def sanitize_details(details: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in details.items() if k not in PII_FIELDS}


def log_identity_event(
    event_type: str,
    account_id: Optional[str],
    details: Dict[str, Any],
    success: bool = True
) -> Dict[str, Any]:
    """Log an identity operation for the audit trail."""
    log_entry = {
        "event": event_type,
        "account_id": account_id,
        "details": sanitize_details(details),
        "success": success,
        "timestamp": to_iso(utcnow()),
    }

    if success:
        logger.info(f"Identity event: {event_type} for account {account_id}", extra=log_entry)
    else:
        logger.warning(f"Identity event FAILED: {event_type} for account {account_id}", extra=log_entry)

    return log_entry


class IdentityAuditLog:
    """Persists audit entries next to the identity documents."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def record(
        self,
        event_type: str,
        account_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        success: bool = True
    ) -> str:
        entry = log_identity_event(event_type, account_id, details or {}, success)
        entry_id = str(uuid.uuid4())
        await self.store.insert(AUDIT_LOG, entry_id, entry)
        return entry_id
