import hashlib
import hmac
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from app.core.config import settings
from app.modules.compliance.exceptions import UpstreamUnavailable
from app.modules.compliance.models import KycProvider

logger = logging.getLogger(__name__)

@dataclass
class ProviderSession:
    reference_id: str
    redirect_url: str
    expires_at: datetime

@dataclass
class ProviderStatus:
    reference_id: str
    vendor_status: str
    reject_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

def generate_reference_id(user_id: Any, provider: KycProvider) -> str:
    """Fresh, never reused reference: provider_user_millis_random."""
    millis = int(time.time() * 1000)
    return f"{provider.value}_{user_id}_{millis}_{secrets.token_hex(8)}"

class ProviderGateway(ABC):
    """
    Narrow contract with an identity-verification vendor.
    Implementations must raise UpstreamUnavailable on any transport failure.
    """
    provider: KycProvider

    @abstractmethod
    async def start_session(self, user_id: Any, redirect_url: str) -> ProviderSession:
        pass

    @abstractmethod
    async def fetch_status(self, reference_id: str) -> ProviderStatus:
        pass

class SumsubGateway(ProviderGateway):
    provider = KycProvider.SUMSUB

    def __init__(
        self,
        base_url: str,
        app_token: str,
        secret_key: str,
        level_name: str,
        timeout: float = 10.0,
        session_ttl: int = 3600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.app_token = app_token
        self._secret_key = secret_key.encode("utf-8")
        self.level_name = level_name
        self.timeout = timeout
        self.session_ttl = session_ttl
        self._transport = transport

    def _sign(self, request: httpx.Request) -> None:
        """
        Sumsub request signature: hex HMAC-SHA256 over
        ts + METHOD + path-with-query + body, keyed with the app secret.
        """
        ts = str(int(time.time()))
        message = ts.encode("ascii") + request.method.upper().encode("ascii") + request.url.raw_path + request.content
        request.headers["X-App-Access-Ts"] = ts
        request.headers["X-App-Access-Sig"] = hmac.new(self._secret_key, message, hashlib.sha256).hexdigest()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        headers = kwargs.pop("headers", {})
        headers.update({"Accept": "application/json", "X-App-Token": self.app_token})

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                request = client.build_request(method, path, headers=headers, **kwargs)
                self._sign(request)
                response = await client.send(request)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"[KYC Gateway] {method} {path} timed out after {self.timeout}s: {e}")
            raise UpstreamUnavailable("Verification provider timed out")
        except httpx.HTTPStatusError as e:
            logger.error(f"[KYC Gateway] {method} {path} returned {e.response.status_code}")
            raise UpstreamUnavailable("Verification provider returned an error")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[KYC Gateway] {method} {path} failed: {e}")
            raise UpstreamUnavailable()

    async def start_session(self, user_id: Any, redirect_url: str) -> ProviderSession:
        reference_id = generate_reference_id(user_id, self.provider)
        logger.info(f"[KYC Gateway] Starting {self.provider.value} session for user {user_id}")

        data = await self._request(
            "POST",
            f"/resources/sdkIntegrations/levels/{quote(self.level_name)}/websdkLink",
            params={"ttlInSecs": self.session_ttl, "externalUserId": reference_id},
            json={"redirect": {"successUrl": redirect_url, "rejectUrl": redirect_url}},
        )
        url = data.get("url")
        if not url:
            raise UpstreamUnavailable("Verification provider returned no session url")

        return ProviderSession(
            reference_id=reference_id,
            redirect_url=url,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.session_ttl),
        )

    async def fetch_status(self, reference_id: str) -> ProviderStatus:
        data = await self._request(
            "GET", f"/resources/applicants/-;externalUserId={quote(reference_id)}/one"
        )
        review = data.get("review") or {}
        review_status = review.get("reviewStatus") or ""
        result = review.get("reviewResult") or {}

        # A completed review carries the verdict in reviewAnswer (GREEN/RED)
        vendor_status = result.get("reviewAnswer") if review_status == "completed" else review_status

        return ProviderStatus(
            reference_id=reference_id,
            vendor_status=vendor_status or "",
            reject_reason=result.get("moderationComment") or ", ".join(result.get("rejectLabels") or []) or None,
            metadata={"applicantId": data.get("id"), "review": review},
        )

class MockProviderGateway(ProviderGateway):
    """
    Stand-in used when no provider credentials are configured.
    The verdict is derived from the last character of the reference so runs are reproducible.
    """

    def __init__(self, provider: KycProvider = KycProvider.SUMSUB, base_url: str = "https://mock-kyc-provider.example.com"):
        self.provider = provider
        self.base_url = base_url.rstrip("/")

    async def start_session(self, user_id: Any, redirect_url: str) -> ProviderSession:
        reference_id = generate_reference_id(user_id, self.provider)
        return ProviderSession(
            reference_id=reference_id,
            redirect_url=f"{self.base_url}/{self.provider.value}/verification?reference={quote(reference_id)}&redirect={quote(redirect_url, safe='')}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def fetch_status(self, reference_id: str) -> ProviderStatus:
        bucket = ord(reference_id[-1]) % 10 if reference_id else 0
        metadata = {"applicantId": f"mock-applicant-{reference_id}"}

        if bucket <= 3:
            return ProviderStatus(reference_id, "pending", metadata=metadata)
        if bucket <= 7:
            return ProviderStatus(reference_id, "approved", metadata={**metadata, "reviewAnswer": "GREEN"})
        return ProviderStatus(
            reference_id,
            "rejected",
            reject_reason="Document authenticity could not be verified",
            metadata={**metadata, "reviewAnswer": "RED", "rejectLabels": ["DOCUMENT_VALIDITY"]},
        )

@lru_cache()
def get_gateway(provider: KycProvider) -> ProviderGateway:
    if provider == KycProvider.SUMSUB and settings.KYC_PROVIDER_APP_TOKEN and settings.KYC_PROVIDER_SECRET_KEY:
        return SumsubGateway(
            base_url=settings.KYC_PROVIDER_BASE_URL,
            app_token=settings.KYC_PROVIDER_APP_TOKEN,
            secret_key=settings.KYC_PROVIDER_SECRET_KEY,
            level_name=settings.KYC_PROVIDER_LEVEL_NAME,
            timeout=settings.KYC_PROVIDER_TIMEOUT_SECONDS,
            session_ttl=settings.KYC_SESSION_TTL_SECONDS,
        )
    logger.warning(f"[KYC Gateway] No credentials for {provider.value}, using Mock Mode.")
    return MockProviderGateway(provider)

def get_gateways() -> Dict[KycProvider, ProviderGateway]:
    return {provider: get_gateway(provider) for provider in KycProvider}
