from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from citizen_api.database import Base


class Company(Base):
    __tablename__ = "companies"

    id = Column(UUID(as_uuid=True), primary_key=True)
    company_code = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    enabled_modules = Column(JSONB, nullable=False, default=list)
    whatsapp_phone_number_id = Column(Text, nullable=True, index=True)
    whatsapp_access_token = Column(Text, nullable=True)
    whatsapp_business_account_id = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_suspended = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    departments = relationship("Department", back_populates="company")
