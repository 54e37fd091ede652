from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.auth.models import User
from app.modules.compliance.models import KycRecord, KycProvider, KycStatus

class KycRecordStore:
    """
    Persistence for KYC records: one per user.

    upsert() only stages the row. Changes reach the database on commit, where
    the version column turns each UPDATE into a compare-and-swap.

    Lookups overwrite whatever the identity map already holds, so every
    transition step computes on the row as currently stored.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_user_id(self, user_id: UUID) -> Optional[KycRecord]:
        result = await self.db.execute(
            select(KycRecord)
            .where(KycRecord.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_by_provider_reference(self, provider: KycProvider, reference_id: str) -> Optional[KycRecord]:
        result = await self.db.execute(
            select(KycRecord).where(
                KycRecord.provider == provider,
                KycRecord.provider_reference == reference_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def upsert(self, record: KycRecord) -> KycRecord:
        self.db.add(record)
        await self.db.flush()
        return record

    async def commit(self, record: Optional[KycRecord] = None) -> None:
        await self.db.commit()
        if record is not None:
            # Pick up server-side timestamps
            await self.db.refresh(record)

    async def rollback(self) -> None:
        await self.db.rollback()

    async def end_read(self) -> None:
        """
        Close a read-only transaction ahead of a provider call.

        Commits instead of rolling back: the session does not expire on commit,
        so records the caller is still holding stay loaded.
        """
        await self.db.commit()

    async def list_with_email(
        self,
        status: Optional[KycStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Tuple[KycRecord, str]], int]:
        stmt = select(KycRecord, User.email).join(User, KycRecord.user_id == User.id)
        count_stmt = select(func.count(KycRecord.id))
        if status is not None:
            stmt = stmt.where(KycRecord.status == status)
            count_stmt = count_stmt.where(KycRecord.status == status)

        result = await self.db.execute(
            stmt.order_by(KycRecord.created_at.desc(), KycRecord.id).offset(offset).limit(limit)
        )
        total = (await self.db.execute(count_stmt)).scalar() or 0
        return result.all(), total
