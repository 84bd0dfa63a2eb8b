from __future__ import annotations

from typing import Optional

from citizen_api.logging_config import get_logger
from citizen_api.services.tenant_directory import TenantConfig

logger = get_logger("category_router")

FALLBACK_CATEGORY = "others"
DEFAULT_CATEGORIES = ("health", "education", "water", "roads", "sanitation", FALLBACK_CATEGORY)


def normalize_label(label: str | None) -> str:
    return " ".join((label or "").strip().lower().split())


class CategoryRouter:
    """Maps complaint categories to a tenant's departments."""

    def available_categories(self, tenant: TenantConfig) -> list[str]:
        labels: list[str] = []
        for department in tenant.departments:
            candidates = department.categories or (department.name,)
            for candidate in candidates:
                label = normalize_label(candidate)
                if label and label not in labels:
                    labels.append(label)
        if not labels:
            return list(DEFAULT_CATEGORIES)
        return labels

    def resolve(self, tenant: TenantConfig, label: str | None) -> Optional[str]:
        """Return the department id for a category label, or None when nothing matches."""
        wanted = normalize_label(label)
        if not wanted:
            return None

        for department in tenant.departments:
            keywords = {normalize_label(c) for c in department.categories}
            if wanted == normalize_label(department.name) or wanted in keywords:
                return department.department_id

        for department in tenant.departments:
            if wanted in normalize_label(department.name):
                return department.department_id

        logger.info(
            "No department for category",
            extra={"context": {"tenant_id": tenant.tenant_id, "category": wanted}},
        )
        return None
