from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.modules.admin.models import AuditLog
from uuid import UUID
from typing import Optional, Dict, Any

async def create_audit_log(
    db: AsyncSession,
    action: str,
    user_id: Optional[UUID] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id else None,
        metadata_json=metadata,
        ip_address=ip_address
    )
    # Part of the caller's unit of work: the entry commits (or rolls back)
    # together with the change it describes.
    db.add(log)
    return log

async def get_audit_logs(db: AsyncSession, limit: int = 50, target_id: Optional[str] = None):
    stmt = select(AuditLog)
    if target_id:
        stmt = stmt.where(AuditLog.target_id == target_id)
    result = await db.execute(stmt.order_by(AuditLog.created_at.desc(), AuditLog.id).limit(limit))
    return result.scalars().all()
