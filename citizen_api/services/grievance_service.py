from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session as DbSession

from citizen_api.constants import (
    GRIEVANCE_PRIORITY_DEFAULT,
    GRIEVANCE_SOURCE_WHATSAPP,
    AuditAction,
    GrievanceStatus,
)
from citizen_api.logging_config import get_logger
from citizen_api.services.audit_service import AuditSink, safe_record
from citizen_api.services.category_router import FALLBACK_CATEGORY, CategoryRouter
from citizen_api.services.result import Result
from citizen_api.services.session_store import Session
from citizen_api.services.tenant_directory import TenantConfig

logger = get_logger("grievance_service")


@dataclass
class GrievanceRecord:
    tenant_id: str
    citizen_name: str
    citizen_phone: str
    description: str
    category: str
    department_id: Optional[str] = None
    citizen_whatsapp: Optional[str] = None
    address: Optional[str] = None
    location: Optional[dict[str, float]] = None
    media: list[dict[str, Any]] = field(default_factory=list)
    status: GrievanceStatus = GrievanceStatus.PENDING
    priority: str = GRIEVANCE_PRIORITY_DEFAULT
    source: str = GRIEVANCE_SOURCE_WHATSAPP


@dataclass(frozen=True)
class FinalizedGrievance:
    grievance_id: str
    category: str
    department_id: Optional[str]


def format_grievance_id(sequence: int) -> str:
    return f"GRV{sequence:08d}"


class GrievanceStore(ABC):
    @abstractmethod
    def create(self, record: GrievanceRecord) -> str:
        """Persist the record and return its human-facing grievance id."""


class SqlGrievanceStore(GrievanceStore):
    def __init__(self, session_factory: Callable[[], DbSession]):
        self.session_factory = session_factory

    def create(self, record: GrievanceRecord) -> str:
        from citizen_api.models import Grievance

        db = self.session_factory()
        try:
            company_id = uuid.UUID(record.tenant_id)
            count = db.query(func.count(Grievance.id)).filter(Grievance.company_id == company_id).scalar() or 0
            grievance_id = format_grievance_id(count + 1)
            now = datetime.now(timezone.utc)
            db.add(
                Grievance(
                    id=uuid.uuid4(),
                    grievance_id=grievance_id,
                    company_id=company_id,
                    department_id=uuid.UUID(record.department_id) if record.department_id else None,
                    citizen_name=record.citizen_name,
                    citizen_phone=record.citizen_phone,
                    citizen_whatsapp=record.citizen_whatsapp,
                    description=record.description,
                    category=record.category,
                    address=record.address,
                    location=record.location,
                    media=record.media,
                    status=record.status.value,
                    priority=record.priority,
                    source=record.source,
                    status_history=[{"status": record.status.value, "changed_at": now.isoformat()}],
                    created_at=now,
                    updated_at=now,
                )
            )
            db.commit()
            return grievance_id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class GrievanceFinalizer:
    """Turns a completed grievance draft into a stored record."""

    def __init__(
        self,
        router: CategoryRouter,
        store: GrievanceStore,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.router = router
        self.store = store
        self.audit_sink = audit_sink

    def finalize(self, tenant: TenantConfig, session: Session) -> Result[FinalizedGrievance]:
        draft = session.draft
        citizen_name = (draft.get("citizen_name") or "").strip()
        description = (draft.get("description") or "").strip()
        if not citizen_name or not description:
            return Result.failure("Grievance draft is incomplete", "incomplete_draft")

        category = draft.get("category") or FALLBACK_CATEGORY
        try:
            department_id = self.router.resolve(tenant, category)
        except Exception as e:
            logger.warning(f"Category routing failed, leaving grievance unassigned: {e}")
            department_id = None

        record = GrievanceRecord(
            tenant_id=tenant.tenant_id,
            department_id=department_id,
            citizen_name=citizen_name,
            citizen_phone=session.phone_number,
            citizen_whatsapp=session.phone_number,
            description=description,
            category=category,
            address=draft.get("address"),
            location=draft.get("location"),
            media=list(draft.get("media") or []),
        )
        try:
            grievance_id = self.store.create(record)
        except Exception as e:
            logger.exception(
                "Failed to create grievance",
                extra={"context": {"tenant_id": tenant.tenant_id, "phone": session.phone_number}},
            )
            return Result.from_exception(e, "storage_error")

        logger.info(
            "Grievance created",
            extra={
                "context": {
                    "tenant_id": tenant.tenant_id,
                    "grievance_id": grievance_id,
                    "category": category,
                    "department_id": department_id,
                }
            },
        )
        safe_record(
            self.audit_sink,
            AuditAction.CREATE,
            "Grievance",
            resource_id=grievance_id,
            tenant_id=tenant.tenant_id,
            details={"category": category, "department_id": department_id, "source": record.source},
        )
        return Result.success(
            FinalizedGrievance(grievance_id=grievance_id, category=category, department_id=department_id)
        )
