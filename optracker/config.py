import os
from typing import Optional

class Settings:
    """Application settings"""
    def __init__(self):
        self.app_name: str = os.getenv("APP_NAME", "Operations Tracker")
        self.app_version: str = os.getenv("APP_VERSION", "1.0.0")
        self.debug: bool = os.getenv("DEBUG", "false").lower() == "true"
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "8000"))

        # API settings
        self.api_v1_prefix: str = os.getenv("API_V1_PREFIX", "/v1")

        # Logging settings
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # Development settings
        cors_origins_str = os.getenv("CORS_ORIGINS", '["http://localhost:3000", "http://localhost:8080"]')
        try:
            import json
            self.cors_origins = json.loads(cors_origins_str) if cors_origins_str.startswith('[') else ["*"]
        except (json.JSONDecodeError, ValueError):
            self.cors_origins = ["*"]

        # Operation store settings: "memory" or "sqlite"
        self.store_backend: str = os.getenv("STORE_BACKEND", "memory").lower()
        self.database_path: str = os.getenv("DATABASE_PATH", "optracker.db")

        # Runner settings
        self.runner_concurrency: int = int(os.getenv("RUNNER_CONCURRENCY", "4"))
        self.runner_queue_size: int = int(os.getenv("RUNNER_QUEUE_SIZE", "100"))

        # Retention of finished operations; 0 disables purging
        self.retention_hours: float = float(os.getenv("RETENTION_HOURS", "168"))
        self.retention_sweep_interval_seconds: float = float(
            os.getenv("RETENTION_SWEEP_INTERVAL_SECONDS", "3600")
        )

    def copy(self, **overrides) -> "Settings":
        """Return a copy with some attributes replaced (handy for tests)."""
        clone = Settings.__new__(Settings)
        clone.__dict__.update(self.__dict__)
        for key, value in overrides.items():
            if not hasattr(clone, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(clone, key, value)
        return clone

    @property
    def retention_seconds(self) -> Optional[float]:
        if self.retention_hours <= 0:
            return None
        return self.retention_hours * 3600

# Global settings instance
settings = Settings()
