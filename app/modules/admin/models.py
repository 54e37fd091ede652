from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, event
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func
import uuid

from app.core.db import Base

class AuditLog(Base):
    """Append-only compliance trail. Rows are never updated or deleted."""
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True) # Null for provider/system actors

    action = Column(String, nullable=False) # e.g. "kyc.user-submission", "kyc.admin-override"
    target_type = Column(String, nullable=True) # e.g. "kyc_record"
    target_id = Column(String, nullable=True, index=True) # UUID as string

    metadata_json = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    ip_address = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

@event.listens_for(AuditLog, "before_update")
@event.listens_for(AuditLog, "before_delete")
def _reject_audit_mutation(mapper, connection, target):
    raise ValueError("Audit log entries are append-only")
