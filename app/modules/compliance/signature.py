import hashlib
import hmac
from functools import lru_cache
from typing import Optional

from app.core.config import settings
from app.modules.compliance.exceptions import Forbidden

# Values the provider sends in X-Payload-Digest-Alg
DIGEST_ALGORITHMS = {
    "HMAC_SHA1_HEX": hashlib.sha1,
    "HMAC_SHA256_HEX": hashlib.sha256,
    "HMAC_SHA512_HEX": hashlib.sha512,
}

class SignatureVerifier:
    """
    Authenticates webhook bodies with a pre-shared secret.

    Always works on the exact bytes received. Re-encoding parsed JSON changes
    whitespace and key order and the digest will no longer match.
    """

    def __init__(self, secret: str, default_algorithm: str = "HMAC_SHA1_HEX"):
        if not secret:
            raise ValueError("Webhook secret must not be empty")
        if default_algorithm not in DIGEST_ALGORITHMS:
            raise ValueError(f"Unsupported digest algorithm: {default_algorithm}")
        self._secret = secret.encode("utf-8")
        self.default_algorithm = default_algorithm

    def sign(self, raw_body: bytes, algorithm: Optional[str] = None) -> str:
        digestmod = DIGEST_ALGORITHMS[algorithm or self.default_algorithm]
        return hmac.new(self._secret, msg=raw_body, digestmod=digestmod).hexdigest()

    def is_valid(self, raw_body: bytes, digest: Optional[str], algorithm: Optional[str] = None) -> bool:
        if not digest:
            return False
        algorithm = algorithm or self.default_algorithm
        if algorithm not in DIGEST_ALGORITHMS:
            return False
        # Some senders prefix the digest, e.g. "sha256=<hex>"
        received = digest.strip().split("=")[-1].lower()
        expected = self.sign(raw_body, algorithm)
        return hmac.compare_digest(expected.encode("ascii"), received.encode("ascii", "replace"))

    def verify(self, raw_body: bytes, digest: Optional[str], algorithm: Optional[str] = None) -> None:
        """Raise Forbidden unless the digest authenticates raw_body."""
        if not self.is_valid(raw_body, digest, algorithm):
            # Same answer for missing header, bad algorithm and wrong digest
            raise Forbidden("Invalid signature")

@lru_cache()
def get_signature_verifier() -> SignatureVerifier:
    return SignatureVerifier(settings.KYC_WEBHOOK_SECRET, settings.KYC_WEBHOOK_DIGEST_ALG)
