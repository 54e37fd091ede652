from typing import Any, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core import deps
from app.modules.compliance.policy import Actor
from app.modules.admin import schemas, service

router = APIRouter()

@router.get("/audit-logs", response_model=list[schemas.AuditLogRead])
async def get_audit_logs(
    limit: int = Query(50, ge=1, le=500),
    target_id: Optional[str] = None,
    current_actor: Actor = Depends(deps.require_admin),
    db: AsyncSession = Depends(get_db)
) -> Any:
    """
    Compliance trail, newest first. Filter by target_id to follow one KYC record.
    """
    return await service.get_audit_logs(db, limit, target_id)
