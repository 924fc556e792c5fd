"""
Application Configuration
Loads settings from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings
from typing import List
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_debug: bool = False

    # CORS Configuration
    cors_origins: List[str] = ["*"]  # Allow all origins for development

    # HTTP Configuration (seconds)
    request_timeout: float = 15.0
    probe_timeout: float = 10.0
    pixiv_timeout: float = 20.0
    detail_timeout: float = 8.0
    max_retries: int = 2
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

    # Engine Configuration
    random_batch_size: int = 6
    random_stagger: float = 0.3
    enrich_concurrency: int = 4

    # Cache Configuration
    cursor_cache_size: int = 256
    cursor_cache_ttl: float = 1800.0
    login_cache_ttl: float = 300.0

    # Logging Configuration
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Rules directory (extra *.json rules loaded at startup); empty = data_dir/rules
    rules_path: str = ""

    # Paths
    @property
    def log_dir(self) -> Path:
        """Get the log directory path."""
        return Path(__file__).parent.parent.parent / "logs"

    @property
    def log_file(self) -> Path:
        """Get the log file path."""
        return self.log_dir / "backend.log"

    @property
    def data_dir(self) -> Path:
        """Get the data directory path."""
        return Path(__file__).parent.parent / "data"

    @property
    def rules_dir(self) -> Path:
        """Get the rules directory path."""
        return Path(self.rules_path) if self.rules_path else self.data_dir / "rules"

    class Config:
        # Only load .env if it exists to avoid permission errors
        env_file = ".env" if Path(".env").exists() else None
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


# Global settings instance
settings = Settings()
