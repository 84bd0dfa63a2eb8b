"""Best-effort audit trail. Failures here never reach the citizen."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from citizen_api.constants import AuditAction
from citizen_api.logging_config import get_logger

logger = get_logger("audit_service")

MESSAGE_PREVIEW_LENGTH = 100


class AuditSink(ABC):
    @abstractmethod
    def record(
        self,
        action: AuditAction,
        resource: str,
        resource_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        ...


class LoggingAuditSink(AuditSink):
    """Writes audit events to the log stream only."""

    def record(self, action, resource, resource_id=None, tenant_id=None, details=None) -> None:
        logger.info(
            f"Audit {action.value} {resource}",
            extra={"context": {"resource_id": resource_id, "tenant_id": tenant_id, "details": details or {}}},
        )


class SqlAuditSink(AuditSink):
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, action, resource, resource_id=None, tenant_id=None, details=None) -> None:
        from citizen_api.models import AuditLog

        db = self.session_factory()
        try:
            db.add(
                AuditLog(
                    id=uuid.uuid4(),
                    action=action.value,
                    resource=resource,
                    resource_id=resource_id,
                    company_id=_as_uuid(tenant_id),
                    details=details or {},
                    created_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def safe_record(
    sink: Optional[AuditSink],
    action: AuditAction,
    resource: str,
    resource_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> bool:
    """Record an audit event, logging instead of raising on failure."""
    if sink is None:
        return False
    try:
        sink.record(action, resource, resource_id=resource_id, tenant_id=tenant_id, details=details)
        return True
    except Exception as e:
        logger.warning(
            f"Failed to write audit log: {e}",
            extra={"context": {"action": action.value, "resource": resource, "resource_id": resource_id}},
        )
        return False


def message_preview(text: str | None) -> str:
    return (text or "")[:MESSAGE_PREVIEW_LENGTH]
