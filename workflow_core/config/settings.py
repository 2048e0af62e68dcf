"""Application Settings - Central Configuration"""
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "workflow_core_dev"
    mongo_use_transactions: bool = False  # Requires a replica set

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = True

    # Workflow engine
    auto_user: str = "auto"

    # Recalculation
    recalculation_max_workers: int = Field(4, ge=1)
    recalculation_isolate_failures: bool = False

    # Rule configuration cache
    rule_cache_enabled: bool = True

    # Environment
    environment: str = "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
