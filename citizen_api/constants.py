from enum import Enum


class Module(str, Enum):
    """Feature modules a tenant can switch on."""

    GRIEVANCE = "GRIEVANCE"
    APPOINTMENT = "APPOINTMENT"
    STATUS_TRACKING = "STATUS_TRACKING"
    LEAD_CAPTURE = "LEAD_CAPTURE"
    SURVEY = "SURVEY"
    FEEDBACK = "FEEDBACK"
    DOCUMENT_UPLOAD = "DOCUMENT_UPLOAD"
    GEO_LOCATION = "GEO_LOCATION"
    MULTI_LANGUAGE = "MULTI_LANGUAGE"


class GrievanceStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REJECTED = "REJECTED"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ASSIGN = "ASSIGN"
    STATUS_CHANGE = "STATUS_CHANGE"


SUPPORTED_LANGUAGES = ("en", "hi", "mr")
DEFAULT_LANGUAGE = "en"

GRIEVANCE_PRIORITY_DEFAULT = "MEDIUM"
GRIEVANCE_SOURCE_WHATSAPP = "WHATSAPP"


def parse_modules(values) -> frozenset[Module]:
    """Coerce stored module names into Module members, skipping unknown names."""
    modules = set()
    for value in values or []:
        try:
            modules.add(Module(str(value).strip().upper()))
        except ValueError:
            continue
    return frozenset(modules)
