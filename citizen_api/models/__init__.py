from citizen_api.models.audit_log import AuditLog
from citizen_api.models.company import Company
from citizen_api.models.department import Department
from citizen_api.models.grievance import Grievance

__all__ = [
    "AuditLog",
    "Company",
    "Department",
    "Grievance",
]
