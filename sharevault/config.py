from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    SECRET_KEY: str = "secret-key"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    TEMP_UPLOAD_DIR: str = "uploads/.chunks"
    PERM_UPLOAD_DIR: str = "uploads"
    CLEANUP_INTERVAL: int = 600  # seconds
    STALE_THRESHOLD: int = 3600  # seconds (1 hour)
    DEFAULT_DOWNLOADS_LIMIT: int = 10
    LARGE_FILE_NOTIFY_BYTES: int = 5 * 1024 * 1024 * 1024  # 5GB
    ENFORCE_CHUNK_ORDER: bool = True
    LOG_LEVEL: str = "INFO"
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000

settings = Settings()
