"""Environment-based configuration for the job sync engine."""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class SyncConfig:
    """Sync engine configuration loaded from environment variables."""

    def __init__(self) -> None:
        self.socket_url = os.environ.get("JOB_SYNC_SOCKET_URL", "http://localhost:9092")
        self.api_url = os.environ.get("JOB_SYNC_API_URL", "http://localhost:8093")

        # Bearer credential for both the push channel and the Job API
        self.token = os.environ.get("JOB_SYNC_TOKEN") or None

        # Connection policy (seconds)
        self.connect_timeout = float(os.environ.get("JOB_SYNC_CONNECT_TIMEOUT", "10"))
        self.reconnect_attempts = int(os.environ.get("JOB_SYNC_RECONNECT_ATTEMPTS", "5"))
        self.reconnect_delay = float(os.environ.get("JOB_SYNC_RECONNECT_DELAY", "1"))
        self.reconnect_delay_max = float(os.environ.get("JOB_SYNC_RECONNECT_DELAY_MAX", "5"))
        self.health_check_interval = float(os.environ.get("JOB_SYNC_HEALTH_CHECK_INTERVAL", "5"))

        # Fallback polling
        self.poll_interval = float(os.environ.get("JOB_SYNC_POLL_INTERVAL", "2"))

        # Also join the global jobs:all room, not just the per-user room
        self.subscribe_all_jobs = _env_bool("JOB_SYNC_SUBSCRIBE_ALL")

        # Job API request timeout (seconds)
        self.api_timeout = float(os.environ.get("JOB_SYNC_API_TIMEOUT", "30"))

        # Local gateway
        self.host = os.environ.get("JOB_SYNC_HOST", "127.0.0.1")
        self.port = int(os.environ.get("JOB_SYNC_PORT", "8095"))
        self.gateway_key = os.environ.get("JOB_SYNC_GATEWAY_KEY") or None

        # CORS origins (comma-separated)
        origins = os.environ.get("JOB_SYNC_CORS_ORIGINS", "")
        self.cors_origins: list[str] = [o.strip() for o in origins.split(",") if o.strip()] if origins else ["*"]

    def reconnect_delay_for(self, attempt: int) -> float:
        """Backoff before reconnect ``attempt`` (1-based), capped at the maximum."""
        return min(self.reconnect_delay * (2 ** (attempt - 1)), self.reconnect_delay_max)


# Singleton
config = SyncConfig()
