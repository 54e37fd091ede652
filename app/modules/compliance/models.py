import uuid
import enum
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Enum, Integer, JSON, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
from app.core.db import Base

class KycStatus(str, enum.Enum):
    NOT_SUBMITTED = "not_submitted" # Virtual: answered when no record exists, never stored
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"

TERMINAL_STATUSES = (KycStatus.VERIFIED, KycStatus.REJECTED)

class KycProvider(str, enum.Enum):
    SUMSUB = "sumsub"

class KycRecord(Base):
    __tablename__ = "kyc_records"
    __table_args__ = (
        # Join key for inbound callbacks
        UniqueConstraint("provider", "provider_reference", name="uq_kyc_provider_reference"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True, index=True)

    status = Column(Enum(KycStatus), default=KycStatus.PENDING, nullable=False, index=True)

    provider = Column(Enum(KycProvider), nullable=True)
    provider_reference = Column(String, nullable=True)
    provider_data = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    document_type = Column(String(50), nullable=True)
    country = Column(String(2), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    submitted_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Every UPDATE is "... WHERE id = :id AND version = :seen"; a lost race raises StaleDataError
    __mapper_args__ = {"version_id_col": version}
