"""
Application configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "FHIR Subscription Gateway"
    APP_VERSION: str = "0.1.0"
    # Debug mode switches logging to the console renderer
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database
    DATABASE_URL: str = "sqlite:///./fhir_gateway.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE: int = 3600

    # FHIR server identity (used to build self-referencing Subscription links)
    FHIR_SERVER_BASE: str = "http://localhost:8080/fhir"

    # Handshake delivery
    HANDSHAKE_CONNECT_TIMEOUT_SEC: float = 5.0
    HANDSHAKE_READ_TIMEOUT_SEC: float = 5.0
    HANDSHAKE_SEND_WORKERS: int = 2

    # Heartbeats
    HEARTBEAT_ENABLED: bool = True
    HEARTBEAT_TICK_SECONDS: float = 60.0
    HEARTBEAT_GRACE_SECONDS: float = 2.0

    # Topic notification delivery
    NOTIFICATION_DELIVERY_WORKERS: int = 4

    # Patient merge
    PATIENT_MERGE_TOPIC: str = "https://gematik.de/fhir/isik/SubscriptionTopic/patient-merge"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()
