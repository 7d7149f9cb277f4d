from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

from offgrid_auth.logging import get_logger
from offgrid_auth.service.stores import AuditLogRepository
from offgrid_auth.storage.models import AuditEvent, AuditLogEntry, new_id, utcnow

logger = get_logger(__name__)


class AuditTrail:
    """Append-only record of security events.

    Writes happen inline with the operation they describe. A failed write is
    reported to operators through the error log and never aborts the operation.
    """

    def __init__(
        self, store: AuditLogRepository, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def append(
        self,
        user_id: Optional[str],
        event: AuditEvent,
        meta: Optional[dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            id=new_id(),
            user_id=user_id,
            event=event,
            meta=dict(meta or {}),
            created_at=self._clock(),
        )
        try:
            return self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                audit_event=event.value,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
