from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    cors_allow_origins: str = Field(default="*", alias="CORS_ALLOW_ORIGINS")

    lock_timeout_seconds: float = Field(default=5.0, gt=0, alias="LOCK_TIMEOUT_SECONDS")
    redemption_code_prefix: str = Field(default="RED", alias="REDEMPTION_CODE_PREFIX")
    redemption_code_length: int = Field(default=8, ge=4, alias="REDEMPTION_CODE_LENGTH")
    redemption_code_attempts: int = Field(default=5, ge=1, alias="REDEMPTION_CODE_ATTEMPTS")

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
