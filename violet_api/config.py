from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    # HTTP server
    PORT: int = 3000
    CORS_ORIGINS: str = (
        "https://czalbert6.github.io,"
        "http://localhost:4321,"
        "http://localhost:3000"
    )

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Carousel uploads: cap on the encoded (data URL) length
    MAX_IMAGE_BYTES: int = 5 * 1024 * 1024

    # Upper bound for GET /api/mensajes
    MESSAGES_LIMIT: int = 50

    # Reject messages that arrive without an hCaptcha token
    HCAPTCHA_REQUIRED: bool = False

    # Allow the startup reconciliation to drop and recreate carousel_images
    SCHEMA_DESTRUCTIVE_REPAIR: bool = True

    @property
    def cors_origins(self) -> list[str]:
        """CORS_ORIGINS split on commas, blanks removed."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
