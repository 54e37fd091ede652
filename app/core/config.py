from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "KYC Verification Service"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "kyc"
    DATABASE_URL: Optional[str] = None

    @property
    def async_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # JWT (tokens are issued by the auth service, we only decode)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    RATE_LIMIT_PER_MINUTE: int = 100

    # KYC provider
    KYC_PROVIDER_BASE_URL: str = "https://api.sumsub.com"
    KYC_PROVIDER_APP_TOKEN: Optional[str] = None # Missing token or secret -> mock gateway
    KYC_PROVIDER_SECRET_KEY: Optional[str] = None # Signs every API request (X-App-Access-Sig)
    KYC_PROVIDER_TIMEOUT_SECONDS: float = 10.0
    KYC_PROVIDER_LEVEL_NAME: str = "basic-kyc-level"
    KYC_SESSION_TTL_SECONDS: int = 3600

    # Webhooks
    KYC_WEBHOOK_SECRET: str
    KYC_WEBHOOK_DIGEST_ALG: str = "HMAC_SHA1_HEX"

    # Open-redirect guard for hosted sessions. Empty host list = any host.
    KYC_REDIRECT_ALLOWED_SCHEMES: List[str] = ["https"]
    KYC_REDIRECT_ALLOWED_HOSTS: List[str] = []

    KYC_TRANSITION_MAX_RETRIES: int = 3

settings = Settings()
