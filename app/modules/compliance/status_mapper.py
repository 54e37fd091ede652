import logging
from typing import Dict, Optional

from app.modules.compliance.models import KycProvider, KycStatus

logger = logging.getLogger(__name__)

# Keys are lower-case; vendor strings are normalized before lookup.
PROVIDER_STATUS_MAPPINGS: Dict[KycProvider, Dict[str, KycStatus]] = {
    KycProvider.SUMSUB: {
        "init": KycStatus.PENDING,
        "pending": KycStatus.PENDING,
        "queued": KycStatus.PENDING,
        "prechecked": KycStatus.PENDING,
        "onhold": KycStatus.PENDING,
        "approved": KycStatus.VERIFIED,
        "verified": KycStatus.VERIFIED,
        "green": KycStatus.VERIFIED,
        "rejected": KycStatus.REJECTED,
        "failed": KycStatus.REJECTED,
        "declined": KycStatus.REJECTED,
        "red": KycStatus.REJECTED,
    },
}

# Unknown vocabulary must never verify anyone.
FALLBACK_STATUS = KycStatus.PENDING

def map_provider_status(provider: KycProvider, vendor_status: Optional[str]) -> KycStatus:
    """
    Translate a vendor status string into our KycStatus.

    Total: every input yields a status. Unknown providers, unknown strings
    and empty values fall back to PENDING.
    """
    mapping = PROVIDER_STATUS_MAPPINGS.get(provider, {})
    key = (vendor_status or "").strip().lower()

    status = mapping.get(key)
    if status is None:
        logger.warning(f"[KYC] Unknown {provider.value} status '{vendor_status}', treating as {FALLBACK_STATUS.value}")
        return FALLBACK_STATUS
    return status
