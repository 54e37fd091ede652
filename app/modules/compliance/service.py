import asyncio
import enum
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlparse
from uuid import UUID

from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.db import get_db
from app.modules.admin import service as admin_service
from app.modules.compliance import schemas
from app.modules.compliance.exceptions import (
    Conflict,
    Forbidden,
    Internal,
    InvalidInput,
    KycError,
    NotFound,
    UpstreamUnavailable,
)
from app.modules.compliance.gateway import ProviderGateway, ProviderSession, get_gateways
from app.modules.compliance.models import KycProvider, KycRecord, KycStatus, TERMINAL_STATUSES
from app.modules.compliance.policy import Actor, can_read, can_submit, is_admin
from app.modules.compliance.signature import SignatureVerifier, get_signature_verifier
from app.modules.compliance.status_mapper import map_provider_status
from app.modules.compliance.store import KycRecordStore

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_REJECTION = "Rejected by verification provider"

class AuditCause(str, enum.Enum):
    USER_SUBMISSION = "user-submission"
    PROVIDER_SESSION = "provider-session"
    PROVIDER_WEBHOOK = "provider-webhook"
    ADMIN_SYNC = "admin-sync"
    ADMIN_OVERRIDE = "admin-override"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class KycService:
    """
    KYC lifecycle engine.

    State machine: NOT_SUBMITTED -> PENDING -> {VERIFIED, REJECTED}; REJECTED -> PENDING
    on resubmission. Only the admin override may leave VERIFIED.

    Every transition is a read-compute-write on a single record, committed
    together with its audit entry. Records carry a version column, so a
    concurrent writer makes the commit fail with StaleDataError; the whole
    step is then re-run against fresh state.
    """

    def __init__(
        self,
        store: KycRecordStore,
        gateways: Dict[KycProvider, ProviderGateway],
        verifier: SignatureVerifier,
        max_retries: int = 3,
        gateway_timeout: float = 15.0,
        redirect_schemes: Iterable[str] = ("https",),
        redirect_hosts: Iterable[str] = (),
    ):
        self.store = store
        self.gateways = gateways
        self.verifier = verifier
        self.max_retries = max(1, max_retries)
        self.gateway_timeout = gateway_timeout
        self.redirect_schemes = {s.lower() for s in redirect_schemes}
        self.redirect_hosts = {h.lower() for h in redirect_hosts}

    # -- reads -------------------------------------------------------------

    async def get_record(self, user_id: UUID, actor: Actor) -> Optional[KycRecord]:
        if not can_read(actor, user_id):
            raise Forbidden("Not allowed to read this KYC record")
        return await self.store.get_by_user_id(user_id)

    async def get_status(self, user_id: UUID, actor: Actor) -> KycStatus:
        record = await self.get_record(user_id, actor)
        return record.status if record else KycStatus.NOT_SUBMITTED

    async def is_kyc_verified(self, user_id: UUID) -> bool:
        """Gate check for features that need a verified identity. No record means not verified."""
        record = await self.store.get_by_user_id(user_id)
        return record is not None and record.status == KycStatus.VERIFIED

    async def list_records(
        self,
        actor: Actor,
        status: Optional[KycStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        self._require_admin(actor)
        if status == KycStatus.NOT_SUBMITTED:
            return [], 0

        rows, total = await self.store.list_with_email(status, offset=(page - 1) * limit, limit=limit)
        items = []
        for record, email in rows:
            item = schemas.KycAdminRead.model_validate(record).model_dump()
            item["user_email"] = email
            items.append(item)
        return items, total

    # -- user operations ---------------------------------------------------

    async def submit(self, user_id: UUID, data: Union[schemas.KycSubmit, Dict[str, Any]], actor: Actor) -> KycRecord:
        if not can_submit(actor, user_id):
            raise Forbidden("Cannot submit KYC for another user")
        data = self._validate_submission(data)

        async def step() -> Tuple[KycRecord, bool]:
            record = await self.store.get_by_user_id(user_id)
            now = utcnow()

            if record is None:
                old_status = KycStatus.NOT_SUBMITTED
                record = KycRecord(
                    user_id=user_id,
                    status=KycStatus.PENDING,
                    document_type=data.document_type,
                    country=data.country,
                    submitted_at=now,
                )
            else:
                if not can_submit(actor, user_id, record):
                    raise Forbidden("Cannot submit KYC for another user")
                if record.status == KycStatus.VERIFIED:
                    raise Conflict("KYC already verified")

                old_status = record.status
                record.document_type = data.document_type
                record.country = data.country
                record.status = KycStatus.PENDING
                record.rejection_reason = None
                # Keep the original attempt date across resubmissions
                if record.submitted_at is None:
                    record.submitted_at = now

            await self.store.upsert(record)
            await self._audit(
                record, old_status, KycStatus.PENDING, AuditCause.USER_SUBMISSION,
                actor_id=actor.id,
                document_type=data.document_type,
                country=data.country,
            )
            return record, True

        record, _ = await self._run_transition(step, f"submit user={user_id}")
        logger.info(f"[KYC] User {user_id} submitted KYC ({record.document_type}/{record.country})")
        return record

    async def initiate_provider_verification(
        self,
        user_id: UUID,
        provider: Union[KycProvider, str],
        redirect_url: str,
        actor: Actor,
    ) -> ProviderSession:
        if not can_submit(actor, user_id):
            raise Forbidden("Cannot start verification for another user")
        provider = self._parse_provider(provider)
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise InvalidInput(f"Unsupported provider: {provider.value}")
        self._validate_redirect_url(redirect_url)

        # Fail fast before spending a provider session
        existing = await self.store.get_by_user_id(user_id)
        if existing is not None and existing.status in TERMINAL_STATUSES:
            raise Conflict(f"Cannot start verification while KYC is {existing.status.value}")
        # Do not hold a transaction open across the network call
        await self.store.end_read()

        session = await self._call_gateway(gateway.start_session(user_id, redirect_url))

        async def step() -> Tuple[KycRecord, bool]:
            record = await self.store.get_by_user_id(user_id)
            if record is None:
                old_status = KycStatus.NOT_SUBMITTED
                record = KycRecord(user_id=user_id, status=KycStatus.PENDING, submitted_at=utcnow())
                previous_reference = None
            else:
                if record.status in TERMINAL_STATUSES:
                    raise Conflict(f"Cannot start verification while KYC is {record.status.value}")
                old_status = record.status
                previous_reference = record.provider_reference

            # A new session always gets a new reference; the old one stops resolving
            record.provider = provider
            record.provider_reference = session.reference_id

            await self.store.upsert(record)
            await self._audit(
                record, old_status, record.status, AuditCause.PROVIDER_SESSION,
                actor_id=actor.id,
                provider=provider.value,
                reference_id=session.reference_id,
                previous_reference=previous_reference,
            )
            return record, True

        await self._run_transition(step, f"initiate user={user_id}")
        logger.info(f"[KYC] Bound {provider.value} reference {session.reference_id} to user {user_id}")
        return session

    # -- provider paths ----------------------------------------------------

    async def handle_callback(
        self,
        provider: Union[KycProvider, str],
        raw_body: bytes,
        digest: Optional[str],
        digest_alg: Optional[str] = None,
    ) -> Tuple[KycRecord, bool]:
        """
        Apply a provider webhook.

        raw_body must be the exact bytes received. Nothing is parsed before the
        signature checks out. Replaying a delivery is a no-op.
        """
        provider = self._parse_provider(provider)

        try:
            self.verifier.verify(raw_body, digest, digest_alg)
        except Forbidden:
            logger.warning(
                f"[KYC Webhook] Rejected {provider.value} callback: signature mismatch "
                f"(alg={digest_alg or self.verifier.default_algorithm}, digest_present={bool(digest)}, body_bytes={len(raw_body)})"
            )
            raise

        try:
            payload = schemas.ProviderWebhookPayload.model_validate(json.loads(raw_body))
        except (ValueError, ValidationError):
            logger.warning(f"[KYC Webhook] Unparseable {provider.value} payload ({len(raw_body)} bytes)")
            raise InvalidInput("Invalid payload")

        if not payload.reference_id:
            raise InvalidInput("Missing referenceId")

        new_status = map_provider_status(provider, payload.status)
        logger.info(
            f"[KYC Webhook] {provider.value} type={payload.type} reference={payload.reference_id} "
            f"status={payload.status} -> {new_status.value}"
        )

        async def step() -> Tuple[KycRecord, bool]:
            record = await self.store.get_by_provider_reference(provider, payload.reference_id)
            if record is None:
                logger.warning(f"[KYC Webhook] No KYC record for {provider.value} reference {payload.reference_id}")
                raise NotFound("KYC record not found")
            changed = await self._apply_provider_result(
                record, new_status, payload.reject_reason, payload.metadata, AuditCause.PROVIDER_WEBHOOK,
            )
            return record, changed

        return await self._run_transition(step, f"webhook reference={payload.reference_id}")

    async def sync_kyc_status(self, user_id: UUID, actor: Actor) -> Optional[KycRecord]:
        """
        Reconcile with the provider's view. Compensates for lost callbacks and
        lands on the same state the callback would have produced.

        Returns None when there is nothing to reconcile.
        """
        self._require_admin(actor)

        record = await self.store.get_by_user_id(user_id)
        if record is None or not record.provider or not record.provider_reference:
            logger.warning(f"[KYC] Nothing to sync for user {user_id}")
            await self.store.end_read()
            return None

        provider, reference_id = record.provider, record.provider_reference
        await self.store.end_read()

        gateway = self.gateways.get(provider)
        if gateway is None:
            raise UpstreamUnavailable(f"No gateway configured for {provider.value}")
        result = await self._call_gateway(gateway.fetch_status(reference_id))
        new_status = map_provider_status(provider, result.vendor_status)

        async def step() -> Tuple[KycRecord, bool]:
            current = await self.store.get_by_user_id(user_id)
            if current is None:
                raise NotFound("KYC record not found")
            if current.provider != provider or current.provider_reference != reference_id:
                # Rebound to a new session while we were asking about the old one
                logger.warning(f"[KYC] Sync for user {user_id} skipped: reference {reference_id} no longer bound")
                return current, False
            changed = await self._apply_provider_result(
                current, new_status, result.reject_reason, result.metadata, AuditCause.ADMIN_SYNC,
                actor_id=actor.id,
            )
            return current, changed

        record, changed = await self._run_transition(step, f"sync user={user_id}")
        logger.info(f"[KYC] Admin {actor.id} synced user {user_id}: {record.status.value} (changed={changed})")
        return record

    # -- admin override ----------------------------------------------------

    async def update_kyc_status(
        self,
        user_id: UUID,
        status: Union[KycStatus, str],
        rejection_reason: Optional[str],
        actor: Actor,
    ) -> KycRecord:
        """Manual correction. The only path allowed to move a record out of VERIFIED."""
        self._require_admin(actor)
        try:
            update = schemas.KycStatusUpdate(status=status, rejection_reason=rejection_reason)
        except ValidationError as e:
            raise InvalidInput(self._first_error(e))
        status = update.status
        reason = update.rejection_reason.strip() if update.rejection_reason else None

        async def step() -> Tuple[KycRecord, bool]:
            record = await self.store.get_by_user_id(user_id)
            if record is None:
                raise NotFound("KYC record not found")

            old_status = record.status
            if old_status == status and record.rejection_reason == reason:
                return record, False

            now = utcnow()
            record.status = status
            record.rejection_reason = reason
            if status in TERMINAL_STATUSES and record.reviewed_at is None:
                record.reviewed_at = now
            if status == KycStatus.VERIFIED and record.verified_at is None:
                record.verified_at = now

            await self.store.upsert(record)
            await self._audit(
                record, old_status, status, AuditCause.ADMIN_OVERRIDE,
                actor_id=actor.id,
                rejection_reason=reason,
                out_of_verified=old_status == KycStatus.VERIFIED,
            )
            return record, True

        record, changed = await self._run_transition(step, f"override user={user_id}")
        logger.info(f"[KYC] Admin {actor.id} set user {user_id} KYC to {status.value} (changed={changed})")
        return record

    # -- internals ---------------------------------------------------------

    async def _apply_provider_result(
        self,
        record: KycRecord,
        new_status: KycStatus,
        reject_reason: Optional[str],
        metadata: Optional[Dict[str, Any]],
        cause: AuditCause,
        actor_id: Optional[UUID] = None,
    ) -> bool:
        """Shared by webhook and sync. Returns whether the record changed."""
        old_status = record.status
        if new_status == old_status:
            return False
        if old_status != KycStatus.PENDING:
            # Provider may not regress a reviewed record; that takes an admin override
            logger.warning(
                f"[KYC] Ignoring provider result {new_status.value} for {old_status.value} record {record.id} ({cause.value})"
            )
            return False

        now = utcnow()
        record.status = new_status
        record.reviewed_at = record.reviewed_at or now
        if new_status == KycStatus.VERIFIED:
            record.verified_at = record.verified_at or now
            record.rejection_reason = None
        else:
            record.rejection_reason = (reject_reason or "").strip() or DEFAULT_PROVIDER_REJECTION
        if metadata:
            record.provider_data = metadata

        await self.store.upsert(record)
        await self._audit(
            record, old_status, new_status, cause,
            actor_id=actor_id,
            reference_id=record.provider_reference,
            rejection_reason=record.rejection_reason,
        )
        return True

    async def _run_transition(
        self,
        step: Callable[[], Awaitable[Tuple[KycRecord, bool]]],
        label: str,
    ) -> Tuple[KycRecord, bool]:
        for attempt in range(1, self.max_retries + 1):
            try:
                record, changed = await step()
                await self.store.commit(record if changed else None)
                return record, changed
            except (StaleDataError, IntegrityError) as e:
                await self.store.rollback()
                logger.warning(f"[KYC] Concurrent update on {label} (attempt {attempt}/{self.max_retries}): {e}")
            except KycError:
                await self.store.rollback()
                raise
            except SQLAlchemyError as e:
                await self.store.rollback()
                logger.error(f"[KYC] Persistence failure on {label}: {e}", exc_info=True)
                raise Internal()

        raise Conflict("KYC record was modified concurrently, please retry")

    async def _call_gateway(self, call: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(call, timeout=self.gateway_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[KYC Gateway] Call exceeded {self.gateway_timeout}s")
            raise UpstreamUnavailable("Verification provider timed out")

    async def _audit(
        self,
        record: KycRecord,
        old_status: KycStatus,
        new_status: KycStatus,
        cause: AuditCause,
        actor_id: Optional[UUID] = None,
        **extra: Any,
    ) -> None:
        await admin_service.create_audit_log(
            self.store.db,
            action=f"kyc.{cause.value}",
            user_id=actor_id,
            target_type="kyc_record",
            target_id=str(record.id),
            metadata={
                "subject_user_id": str(record.user_id),
                "old_status": old_status.value,
                "new_status": new_status.value,
                "cause": cause.value,
                "actor": str(actor_id) if actor_id else cause.value,
                **extra,
            },
        )

    def _require_admin(self, actor: Actor) -> None:
        if not is_admin(actor):
            raise Forbidden("Admin only")

    def _parse_provider(self, provider: Union[KycProvider, str]) -> KycProvider:
        try:
            return KycProvider(provider)
        except ValueError:
            raise InvalidInput(f"Unsupported provider: {provider}")

    def _validate_submission(self, data: Union[schemas.KycSubmit, Dict[str, Any]]) -> schemas.KycSubmit:
        if isinstance(data, schemas.KycSubmit):
            return data
        try:
            return schemas.KycSubmit.model_validate(data)
        except ValidationError as e:
            raise InvalidInput(self._first_error(e))

    def _validate_redirect_url(self, redirect_url: str) -> None:
        if not redirect_url or not isinstance(redirect_url, str):
            raise InvalidInput("Invalid redirect URL")
        parsed = urlparse(redirect_url)
        host = (parsed.hostname or "").lower()
        if not parsed.scheme or not host:
            raise InvalidInput("Invalid redirect URL")
        if parsed.scheme.lower() not in self.redirect_schemes:
            raise InvalidInput("Redirect URL scheme not allowed")
        if self.redirect_hosts and host not in self.redirect_hosts:
            raise InvalidInput("Redirect URL host not allowed")

    @staticmethod
    def _first_error(e: ValidationError) -> str:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        return f"{loc}: {err['msg']}" if loc else err["msg"]

def get_kyc_service(db: AsyncSession = Depends(get_db)) -> KycService:
    return KycService(
        store=KycRecordStore(db),
        gateways=get_gateways(),
        verifier=get_signature_verifier(),
        max_retries=settings.KYC_TRANSITION_MAX_RETRIES,
        gateway_timeout=settings.KYC_PROVIDER_TIMEOUT_SECONDS + 5,
        redirect_schemes=settings.KYC_REDIRECT_ALLOWED_SCHEMES,
        redirect_hosts=settings.KYC_REDIRECT_ALLOWED_HOSTS,
    )
