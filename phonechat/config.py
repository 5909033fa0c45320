from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.

    Firebase project credentials are empty by default and must be
    supplied externally (environment or .env file).
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Backend service
    PORT: int = 3030
    SERVICE_ACCOUNT_PATH: str = "firebaseServiceAccount.json"
    # Optional shared secret for the administrative endpoints; empty keeps them open
    ADMIN_API_KEY: str = ""

    # Firebase client configuration
    FIREBASE_API_KEY: str = ""
    FIREBASE_AUTH_DOMAIN: str = ""
    FIREBASE_DATABASE_URL: str = ""
    FIREBASE_PROJECT_ID: str = ""
    FIREBASE_STORAGE_BUCKET: str = ""
    FIREBASE_MESSAGING_SENDER_ID: str = ""
    FIREBASE_APP_ID: str = ""
    FIREBASE_MEASUREMENT_ID: str = ""
    FIREBASE_AUTH_EMULATOR_HOST: str = ""

    # Phone auth client
    BACKEND_URL: str = "http://localhost:3030/api/"
    RECAPTCHA_RESET_DELAY: float = 0.5
    TOKEN_REFRESH_SKEW: int = 300
    SESSION_FILE: str = ""
    HTTP_TIMEOUT: float = 10.0

    # Chat client
    # "sql" keeps messages in DATABASE_URL, "firestore" uses Cloud Firestore
    MESSAGE_BACKEND: str = "sql"
    DATABASE_URL: str = "sqlite:///./chat.db"
    CHAT_INITIAL_PAGE_SIZE: int = 2
    CHAT_HISTORY_PAGE_SIZE: int = 20
    DEFAULT_CONVERSATION_ID: str = "general"

    @property
    def firebase_configured(self) -> bool:
        return bool(self.FIREBASE_API_KEY)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
