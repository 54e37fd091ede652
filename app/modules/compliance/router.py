from typing import Any, Optional, Union
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from uuid import UUID

from app.core import deps
from app.modules.compliance import schemas
from app.modules.compliance.models import KycStatus
from app.modules.compliance.policy import Actor
from app.modules.compliance.service import KycService, get_kyc_service

router = APIRouter()

@router.get("/me", response_model=Union[schemas.KycRead, schemas.KycVirtualRead])
async def get_my_kyc(
    current_actor: Actor = Depends(deps.get_current_actor),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    record = await kyc.get_record(current_actor.id, current_actor)
    if record is None:
        return schemas.KycVirtualRead()
    return schemas.KycRead.model_validate(record)

@router.post("/me", response_model=schemas.KycRead, status_code=status.HTTP_201_CREATED)
async def submit_kyc(
    submission: schemas.KycSubmit,
    current_actor: Actor = Depends(deps.get_current_actor),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    return await kyc.submit(current_actor.id, submission, current_actor)

@router.post("/providers/{provider}/session", response_model=schemas.KycSessionRead)
async def start_provider_session(
    provider: str,
    session_in: schemas.KycSessionCreate,
    current_actor: Actor = Depends(deps.get_current_actor),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    """
    Start a hosted verification session. The browser should be sent to redirect_url.
    """
    session = await kyc.initiate_provider_verification(
        current_actor.id, provider, session_in.redirect_url, current_actor
    )
    return schemas.KycSessionRead(
        redirect_url=session.redirect_url,
        reference_id=session.reference_id,
        expires_at=session.expires_at,
    )

@router.post("/webhook/{provider}", response_model=schemas.WebhookAck)
async def provider_webhook(
    provider: str,
    request: Request,
    x_payload_digest: Optional[str] = Header(None),
    x_payload_digest_alg: Optional[str] = Header(None),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    """
    Provider callback. Authenticated by HMAC over the raw body, not by a user token.
    """
    # Exact bytes as received; the digest is computed over these
    raw_body = await request.body()
    record, changed = await kyc.handle_callback(provider, raw_body, x_payload_digest, x_payload_digest_alg)
    return {"ok": True, "status": record.status, "changed": changed}

# Admin

@router.get("/admin/records", response_model=schemas.KycPage)
async def list_kyc_records(
    status_filter: Optional[KycStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_actor: Actor = Depends(deps.require_admin),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    items, total = await kyc.list_records(current_actor, status_filter, page, limit)
    return {"items": items, "total": total, "page": page, "limit": limit}

@router.get("/admin/records/{user_id}", response_model=schemas.KycAdminRead)
async def get_user_kyc(
    user_id: UUID,
    current_actor: Actor = Depends(deps.require_admin),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    record = await kyc.get_record(user_id, current_actor)
    if not record:
        raise HTTPException(status_code=404, detail="KYC record not found")
    return record

@router.put("/admin/records/{user_id}/status", response_model=schemas.KycAdminRead)
async def update_kyc_status(
    user_id: UUID,
    update_in: schemas.KycStatusUpdate,
    current_actor: Actor = Depends(deps.require_admin),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    return await kyc.update_kyc_status(user_id, update_in.status, update_in.rejection_reason, current_actor)

@router.post("/admin/records/{user_id}/sync", response_model=schemas.KycAdminRead)
async def sync_kyc_status(
    user_id: UUID,
    current_actor: Actor = Depends(deps.require_admin),
    kyc: KycService = Depends(get_kyc_service)
) -> Any:
    """
    Pull the current verdict from the provider. Use when a callback may have been lost.
    """
    record = await kyc.sync_kyc_status(user_id, current_actor)
    if not record:
        raise HTTPException(status_code=404, detail="KYC record not found or no provider information available")
    return record
