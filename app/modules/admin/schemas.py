from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID
from datetime import datetime
from typing import Optional, Dict, Any

class AuditLogRead(BaseModel):
    """
    One compliance-trail entry. For KYC actions metadata holds
    subject_user_id, old_status, new_status, cause and actor.
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    user_id: Optional[UUID] = None # Acting user; null for provider callbacks
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_json")
    ip_address: Optional[str] = None
    created_at: datetime
