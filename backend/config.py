"""Centralized configuration — all env vars in one place."""

import os


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        self.cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
        self.git_sha: str = os.getenv("GIT_SHA", "unknown")
        self.environment: str = os.getenv("ENVIRONMENT", "local")

        # Record store (LeanCloud REST API)
        self.record_store: str = os.getenv("RECORD_STORE", "leancloud").lower()
        self.leancloud_app_id: str | None = os.getenv("LEANCLOUD_APP_ID")
        self.leancloud_app_key: str | None = os.getenv("LEANCLOUD_APP_KEY")
        self.leancloud_server_url: str | None = os.getenv("LEANCLOUD_SERVER_URL")
        self.store_timeout_seconds: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))

        # Cache
        self.cache_default_ttl_seconds: int = int(os.getenv("CACHE_DEFAULT_TTL_SECONDS", "300"))
        # 0 disables the periodic vote-cache health check
        self.cache_health_check_interval_seconds: float = float(
            os.getenv("CACHE_HEALTH_CHECK_INTERVAL_SECONDS", "3600")
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def uses_memory_store(self) -> bool:
        return self.record_store == "memory"

    def validate(self) -> list[str]:
        """Return list of missing required env vars for the remote record store."""
        if self.uses_memory_store:
            return []
        required = ["LEANCLOUD_APP_ID", "LEANCLOUD_APP_KEY", "LEANCLOUD_SERVER_URL"]
        return [var for var in required if not getattr(self, var.lower())]


settings = Settings()
