from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from app.modules.auth.models import UserRole
from app.modules.compliance.models import KycRecord

@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller, as handed to us by the auth layer."""
    id: UUID
    role: UserRole

def is_admin(actor: Actor) -> bool:
    return actor.role == UserRole.ADMIN

def can_read(actor: Actor, owner_id: UUID, record: Optional[KycRecord] = None) -> bool:
    if record is not None:
        owner_id = record.user_id
    return actor.id == owner_id or is_admin(actor)

def can_submit(actor: Actor, owner_id: UUID, record: Optional[KycRecord] = None) -> bool:
    if record is not None:
        owner_id = record.user_id
    return actor.id == owner_id
