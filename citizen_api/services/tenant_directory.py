"""Tenant lookup by WhatsApp channel (phone_number_id)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import yaml
from sqlalchemy.orm import Session

from citizen_api.constants import Module, parse_modules
from citizen_api.logging_config import get_logger

logger = get_logger("tenant_directory")


@dataclass(frozen=True)
class ChannelCredentials:
    phone_number_id: Optional[str]
    access_token: Optional[str]
    business_account_id: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)


@dataclass(frozen=True)
class DepartmentInfo:
    department_id: str
    name: str
    categories: tuple[str, ...] = ()


@dataclass(frozen=True)
class TenantConfig:
    tenant_id: str
    name: str
    channel: ChannelCredentials
    enabled_modules: frozenset[Module] = frozenset()
    departments: tuple[DepartmentInfo, ...] = field(default_factory=tuple)

    def has_module(self, module: Module) -> bool:
        return module in self.enabled_modules


class TenantDirectory(ABC):
    @abstractmethod
    def get_by_channel(self, channel_id: str) -> Optional[TenantConfig]:
        """Return the active tenant owning this channel, or None."""


class InMemoryTenantDirectory(TenantDirectory):
    def __init__(self, tenants: list[TenantConfig] | None = None):
        self._by_channel: dict[str, TenantConfig] = {}
        for tenant in tenants or []:
            self.add(tenant)

    def add(self, tenant: TenantConfig) -> None:
        if tenant.channel.phone_number_id:
            self._by_channel[tenant.channel.phone_number_id] = tenant

    def get_by_channel(self, channel_id: str) -> Optional[TenantConfig]:
        return self._by_channel.get(channel_id)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "InMemoryTenantDirectory":
        with Path(path).open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        tenants = []
        for raw in data.get("tenants", []):
            if raw.get("is_active", True) is False:
                continue
            departments = tuple(
                DepartmentInfo(
                    department_id=str(dept["department_id"]),
                    name=str(dept["name"]),
                    categories=tuple(str(c).lower() for c in dept.get("categories") or []),
                )
                for dept in raw.get("departments") or []
            )
            tenants.append(
                TenantConfig(
                    tenant_id=str(raw["tenant_id"]),
                    name=str(raw.get("name") or raw["tenant_id"]),
                    channel=ChannelCredentials(
                        phone_number_id=str(raw.get("phone_number_id") or "") or None,
                        access_token=raw.get("access_token"),
                        business_account_id=raw.get("business_account_id"),
                    ),
                    enabled_modules=parse_modules(raw.get("enabled_modules")),
                    departments=departments,
                )
            )
        logger.info(f"Loaded {len(tenants)} tenants from {path}")
        return cls(tenants)


class SqlTenantDirectory(TenantDirectory):
    """Reads companies and their active departments through SQLAlchemy."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get_by_channel(self, channel_id: str) -> Optional[TenantConfig]:
        from citizen_api.models import Company, Department

        db = self.session_factory()
        try:
            company = (
                db.query(Company)
                .filter(
                    Company.whatsapp_phone_number_id == channel_id,
                    Company.is_active.is_(True),
                    Company.is_suspended.is_(False),
                    Company.is_deleted.is_(False),
                )
                .first()
            )
            if not company:
                return None

            departments = (
                db.query(Department)
                .filter(Department.company_id == company.id, Department.is_active.is_(True))
                .order_by(Department.created_at)
                .all()
            )
            return TenantConfig(
                tenant_id=str(company.id),
                name=company.name,
                channel=ChannelCredentials(
                    phone_number_id=company.whatsapp_phone_number_id,
                    access_token=company.whatsapp_access_token,
                    business_account_id=company.whatsapp_business_account_id,
                ),
                enabled_modules=parse_modules(company.enabled_modules),
                departments=tuple(
                    DepartmentInfo(
                        department_id=str(dept.id),
                        name=dept.name,
                        categories=tuple(str(c).lower() for c in dept.categories or []),
                    )
                    for dept in departments
                ),
            )
        finally:
            db.close()
