from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import List


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Application settings
    APP_NAME: str = "ScholarTrack"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 5000

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Server database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./scholartrack.db"
    DATABASE_ECHO: bool = False

    # Local store settings
    LOCAL_DB_PATH: str = "./scholartrack-local.db"
    LOCAL_DB_NAME: str = "scholartrack"
    LOCAL_SCHEMA_VERSION: int = 5

    # Snapshot settings
    SNAPSHOT_DIR: str = "./snapshots"
    SNAPSHOT_PREFIX: str = "scholartrack_snapshot_"
    MAX_SNAPSHOTS: int = 10

    # Migration settings
    MIGRATION_BATCH_SIZE: int = 50

    # Sync settings
    SYNC_SERVER_URL: str = "http://localhost:5000/api"
    SYNC_TIMEOUT_SECONDS: float = 10.0
    AUTO_SYNC: bool = True
    SYNC_ON_STARTUP: bool = True

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @field_validator("MIGRATION_BATCH_SIZE")
    @classmethod
    def validate_batch_size(cls, v):
        if v < 1 or v > 1000:
            raise ValueError("MIGRATION_BATCH_SIZE must be between 1 and 1000")
        return v


settings = Settings()
