from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "America/Bogota"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Background worker
    REDIS_URL: str = "redis://localhost:6379/0"

    # Payment providers
    # Placeholder values keep local/test runs from failing when gateway
    # credentials are not required. Real deployments override via env.
    WOMPI_EVENTS_KEY: str = "test-wompi-events-key"
    PAYU_API_KEY: str = "test-payu-api-key"
    PAYU_MERCHANT_ID: str = "508029"
    PAYU_HASH_ALGORITHM: Literal["md5", "sha1", "sha256"] = "md5"

    # Carrier
    CARRIER_API_URL: str = "https://api.envioclickpro.com.co"
    CARRIER_API_KEY: str = "test-carrier-key"
    CARRIER_TIMEOUT_SECONDS: float = 15.0
    CARRIER_REQUEST_PICKUP: bool = True
    CARRIER_INSURANCE: bool = False
    CARRIER_DESCRIPTION: str = "Papeleria"
    SHIPPING_RETRY_MAX_ATTEMPTS: int = 5

    # Store origin address (sender block on shipping guides)
    STORE_COMPANY: str = "Papeleria P de Papel"
    STORE_CONTACT_NAME: str = "Paula Morales"
    STORE_EMAIL: str = "tienda@example.com"
    STORE_PHONE: str = "3142829044"
    STORE_ADDRESS: str = "Calle 12 AA sur #55d-30"
    STORE_SUBURB: Optional[str] = None
    STORE_CROSS_STREET: Optional[str] = None
    STORE_REFERENCE: Optional[str] = None
    STORE_LOCALITY_CODE: str = "05001000"

    # Collaborating services
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"
    INVOICING_SERVICE_URL: str = "http://invoicing-service:8010"
    INTERNAL_SERVICE_SECRET: str = "test-internal-secret"
    INTERNAL_TIMEOUT_SECONDS: float = 10.0

    # Order policies
    CANCELLED_FINANCIALS_POLICY: Literal["retain", "clear"] = "retain"
    ALLOW_CANCELLED_REACTIVATION: bool = False

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
