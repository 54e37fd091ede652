from typing import Optional
from fastapi import HTTPException, status

class KycError(HTTPException):
    """
    Base for every error the KYC engine raises.

    These are HTTPExceptions so routers can let them bubble up and FastAPI
    renders them as {"detail": ...} with the right status code.
    """
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "KYC error"

    def __init__(self, detail: Optional[str] = None, headers: Optional[dict] = None):
        super().__init__(
            status_code=self.status_code,
            detail=detail or self.default_detail,
            headers=headers,
        )

class InvalidInput(KycError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input"

class Forbidden(KycError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Forbidden"

class NotFound(KycError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "KYC record not found"

class Conflict(KycError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Illegal KYC status transition"

class UpstreamUnavailable(KycError):
    """Provider gateway failed or timed out. Safe to retry, nothing was written."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Verification provider unavailable"

    def __init__(self, detail: Optional[str] = None, retry_after: int = 30):
        super().__init__(detail, headers={"Retry-After": str(retry_after)})

class Internal(KycError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Failed to persist KYC record"
