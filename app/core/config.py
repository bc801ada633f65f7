from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Lnked Chat"
    API_V1_STR: str = "/api/v1"
    DATABASE_URL: str = "sqlite:///./lnked_chat.db"

    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # Message store limits
    MESSAGE_MAX_LENGTH: int = 10000
    CONVERSATION_TITLE_MAX_LENGTH: int = 100
    REACTION_EMOJI_MAX_LENGTH: int = 32
    DEFAULT_MESSAGE_LIMIT: int = 50
    MAX_MESSAGE_LIMIT: int = 100

    # Search
    SEARCH_MIN_QUERY_LENGTH: int = 2
    SEARCH_MAX_QUERY_LENGTH: int = 1000
    SEARCH_DEFAULT_LIMIT: int = 50
    SEARCH_MAX_LIMIT: int = 100
    SEARCH_MAX_OFFSET: int = 10000

    # Link previews (background enrichment of posted messages)
    LINK_PREVIEW_ENABLED: bool = True
    LINK_PREVIEW_TIMEOUT_SECONDS: float = 8.0
    LINK_PREVIEW_MAX_HTML_BYTES: int = 512000
    LINK_PREVIEW_MAX_TITLE_LENGTH: int = 200
    LINK_PREVIEW_MAX_DESCRIPTION_LENGTH: int = 300
    LINK_PREVIEW_MAX_URL_LENGTH: int = 2048
    LINK_PREVIEW_USER_AGENT: str = "Mozilla/5.0 (compatible; Lnked/1.0; +https://lnked.com/bot)"

    # WebSocket
    WS_PING_INTERVAL: int = 30  # Clients are expected to ping at least this often
    WS_ENABLE_HEARTBEAT: bool = True
    WS_CLEANUP_INTERVAL: int = 60  # Seconds between inactive-connection sweeps
    WS_SESSION_TIMEOUT: int = 300  # Idle seconds before a socket is closed
    TYPING_TIMEOUT_SECONDS: float = 3.0  # A typing indicator stops after this much silence

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'

settings = Settings()
