from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Dict, List, Optional
from app.modules.compliance.models import KycProvider, KycStatus

class KycSubmit(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    document_type: str = Field(..., alias="documentType", min_length=1, max_length=50)
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2")

    @field_validator("document_type")
    @classmethod
    def strip_document_type(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Document type must not be blank")
        return v

    @field_validator("country")
    @classmethod
    def normalize_country(cls, v: str) -> str:
        if not v.isascii() or not v.isalpha():
            raise ValueError("Country must be a 2-character ISO code")
        return v.upper()

class KycStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: KycStatus
    rejection_reason: Optional[str] = Field(None, alias="rejectionReason", max_length=500)

    @model_validator(mode="after")
    def reason_iff_rejected(self) -> "KycStatusUpdate":
        if self.status == KycStatus.NOT_SUBMITTED:
            raise ValueError("not_submitted cannot be assigned")
        has_reason = bool(self.rejection_reason and self.rejection_reason.strip())
        if self.status == KycStatus.REJECTED and not has_reason:
            raise ValueError("Rejection reason is required when status is rejected")
        if self.status != KycStatus.REJECTED and has_reason:
            raise ValueError("Rejection reason is only allowed when status is rejected")
        return self

class KycSessionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    redirect_url: str = Field(..., alias="redirectUrl", min_length=1, max_length=2048)

class KycSessionRead(BaseModel):
    redirect_url: str
    reference_id: str
    expires_at: datetime

class KycRead(BaseModel):
    id: UUID
    user_id: UUID
    status: KycStatus
    provider: Optional[KycProvider] = None
    provider_reference: Optional[str] = None
    document_type: Optional[str] = None
    country: Optional[str] = None
    rejection_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class KycAdminRead(KycRead):
    user_email: Optional[str] = None
    provider_data: Optional[Dict[str, Any]] = None

class KycVirtualRead(BaseModel):
    """Answer for users who never submitted: nothing is stored for them."""
    status: KycStatus = KycStatus.NOT_SUBMITTED

class KycPage(BaseModel):
    items: List[KycAdminRead]
    total: int
    page: int
    limit: int

class ProviderWebhookPayload(BaseModel):
    """Body the provider posts to the callback endpoint. Unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Optional[str] = None
    reference_id: Optional[str] = Field(None, alias="referenceId")
    status: Optional[str] = None
    reject_reason: Optional[str] = Field(None, alias="rejectReason")
    metadata: Optional[Dict[str, Any]] = None

class WebhookAck(BaseModel):
    ok: bool = True
    status: KycStatus
    changed: bool
