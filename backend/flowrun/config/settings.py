"""Application Settings - Central Configuration"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "flowrun_dev"

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = True

    # Assignee access (magic links)
    magic_link_expiry_hours: int = 168  # One week
    frontend_url: str = "http://localhost:3000"

    # Automation chaining - upper bound on consecutive automated steps per call
    max_auto_exec_chain: int = 10

    # Sub-flows - deepest allowed chain of child runs below a top-level run
    max_sub_flow_depth: int = 5

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"

    def task_url(self, token: str) -> str:
        """Build the assignee task link for a magic link token"""
        return f"{self.frontend_url.rstrip('/')}/task/{token}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
