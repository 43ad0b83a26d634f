"""
Process-wide audit sink.

Components only write to it. Every entry is appended after the primary
write it describes has completed; a failure to append is logged and
never undoes that primary write.
"""

import logging
from typing import Any, Optional

from iou.models.audit import AuditEntry
from iou.storage.base import Repository

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only audit trail backed by the repository."""

    def __init__(self, repo: Repository):
        self._repo = repo

    async def record(
        self,
        action: str,
        component: str,
        record_type: str,
        record_id: Any = None,
        details: Optional[dict[str, Any]] = None,
        actor_id: Any = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        entry = AuditEntry(
            action=action,
            component=component,
            record_type=record_type,
            record_id=None if record_id is None else str(record_id),
            actor_id=None if actor_id is None else str(actor_id),
            details=details or {},
            success=success,
            error=error,
        )
        try:
            await self._repo.append_audit(entry)
        except Exception:
            logger.exception("Failed to append audit entry %s for %s", action, record_id)
            return None
        return entry

    async def entries(
        self,
        action: Optional[str] = None,
        record_id: Any = None,
    ) -> list[AuditEntry]:
        return await self._repo.list_audit(
            action=action,
            record_id=None if record_id is None else str(record_id),
        )
