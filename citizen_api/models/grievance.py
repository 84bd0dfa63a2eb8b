from sqlalchemy import Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from citizen_api.constants import GRIEVANCE_PRIORITY_DEFAULT, GRIEVANCE_SOURCE_WHATSAPP, GrievanceStatus
from citizen_api.database import Base


class Grievance(Base):
    __tablename__ = "grievances"
    __table_args__ = (UniqueConstraint("company_id", "grievance_id", name="uq_grievances_company_code"),)

    id = Column(UUID(as_uuid=True), primary_key=True)
    grievance_id = Column(Text, nullable=False, index=True)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id"), nullable=False, index=True)
    department_id = Column(UUID(as_uuid=True), ForeignKey("departments.id"), nullable=True, index=True)
    citizen_name = Column(Text, nullable=False)
    citizen_phone = Column(Text, nullable=False, index=True)
    citizen_whatsapp = Column(Text, nullable=True)
    description = Column(Text, nullable=False)
    category = Column(Text, nullable=True)
    address = Column(Text, nullable=True)
    # {"latitude": .., "longitude": ..} when the citizen shared a pin
    location = Column(JSONB, nullable=True)
    media = Column(JSONB, nullable=False, default=list)
    status = Column(Text, nullable=False, default=GrievanceStatus.PENDING.value)
    priority = Column(Text, nullable=False, default=GRIEVANCE_PRIORITY_DEFAULT)
    source = Column(Text, nullable=False, default=GRIEVANCE_SOURCE_WHATSAPP)
    status_history = Column(JSONB, nullable=False, default=list)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))
