from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "chatsync"
    VERSION: str = "0.1.0"
    ENV: str = "development"
    PORT: int = 8000

    # Backend (admite nombres alternativos de variables de entorno)
    API_BASE_URL: str = Field(
        default="https://alphachat-v2-backend.onrender.com/api",
        validation_alias=AliasChoices("API_BASE_URL", "ALPHACHAT_API_URL"),
    )
    SOCKET_URL: str = Field(
        default="https://alphachat-v2-backend.onrender.com",
        validation_alias=AliasChoices("SOCKET_URL", "ALPHACHAT_SOCKET_URL"),
    )

    # El backend puede arrancar en frío: timeouts generosos
    HTTP_TIMEOUT: float = 30.0
    PAGE_LIMIT: int = 50

    # Realtime
    SOCKET_CONNECT_TIMEOUT: float = 20.0
    SOCKET_RECONNECT_ATTEMPTS: int = 5
    SOCKET_RECONNECT_DELAY: float = 1.0
    SOCKET_RECONNECT_DELAY_MAX: float = 5.0
    TYPING_TTL_SECONDS: float = 6.0

    # Session store
    SESSION_STORE_PATH: str = "data/session.json"
    AUTO_RESTORE_SESSION: bool = True

    # Logging
    LOG_DIR: str = "logs"
    LOG_FILE: str = "chatsync.log"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
