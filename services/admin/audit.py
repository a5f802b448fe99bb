"""
services/admin/audit.py
Append-only audit trail for admin actions.

Call `record` after the mutation it describes has been applied to the same
session and before committing: the record and the change land together or
not at all. Entries are never updated or deleted.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AdminAction, AdminActionType, AuditTargetType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Provenance:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Optional[Request]) -> "Provenance":
        if request is None:
            return cls()
        forwarded = request.headers.get("X-Forwarded-For")
        ip = forwarded.split(",")[0].strip() if forwarded else (
            request.client.host if request.client else None
        )
        user_agent = request.headers.get("User-Agent")
        return cls(ip_address=ip, user_agent=user_agent[:500] if user_agent else None)


class AuditRecorder:
    """Writes AdminAction rows."""

    async def record(
        self,
        db: AsyncSession,
        admin_id: uuid.UUID,
        action_type: AdminActionType,
        target_type: AuditTargetType,
        target_id: uuid.UUID,
        previous_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        provenance: Optional[Provenance] = None,
    ) -> AdminAction:
        provenance = provenance or Provenance()
        entry = AdminAction(
            admin_id=admin_id,
            action_type=action_type,
            target_type=target_type,
            target_id=target_id,
            previous_state=previous_state,
            new_state=new_state,
            reason=reason,
            ip_address=provenance.ip_address,
            user_agent=provenance.user_agent,
        )
        db.add(entry)
        await db.flush()
        logger.info(
            f"Admin {admin_id} {action_type.value} {target_type.value}:{target_id}"
            + (f" ({reason})" if reason else "")
        )
        return entry


audit_recorder = AuditRecorder()
