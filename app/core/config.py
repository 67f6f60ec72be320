from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from pathlib import Path


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    # App
    APP_NAME: str = Field(default="card-admin-notifications")
    LOG_LEVEL: str = Field(default="INFO")
    SQLITE_PATH: str = Field(default="./data/db.sqlite3")

    # Auth
    JWT_ACCESS_SECRET: str = Field(default="dev-access-secret-change-me-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_EXPIRES_MINUTES: int = Field(default=15)

    # Notifications
    NOTIFY_HEARTBEAT_SECONDS: float = Field(default=30.0)
    NOTIFY_PERSIST_TIMEOUT_SECONDS: float = Field(default=2.0)
    NOTIFY_WRITE_TIMEOUT_SECONDS: float = Field(default=5.0)
    NOTIFY_QUEUE_SIZE: int = Field(default=100)
    NOTIFY_SHUTDOWN_GRACE_SECONDS: float = Field(default=5.0)

    # CORS
    CORS_ALLOW_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:8080"]
    )

    @property
    def sqlite_uri(self) -> str:
        path = Path(self.SQLITE_PATH).expanduser().resolve()
        return f"sqlite+pysqlite:///{path}"


settings = Settings()
