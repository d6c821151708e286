from typing import Optional
import os

from pydantic import BaseModel, Field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    """Runtime configuration for the telemetry, sync and AI proxy services"""

    base_url: str = Field("http://localhost:8000", description="Origin serving the /api endpoints")
    document_base_url: Optional[str] = Field(None, description="Document store origin, defaults to base_url")
    data_dir: str = Field(".sysintel", description="Directory for durable local storage")

    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "sysintel"

    # Telemetry transport
    ingest_path: str = "/api/telemetry/ingest"
    flush_interval_ms: int = 10_000
    batch_limit: int = 10
    max_queue_size: int = 500

    # Sync and policy caches
    sync_interval_ms: int = 60_000
    policy_ttl_ms: int = 60_000

    # Policy engine
    default_credits: int = 20
    consolidation_interval_ms: int = 10_000
    low_power_interval_ms: int = 120_000
    admin_email: Optional[str] = None

    # AI proxy
    ai_retries: int = 3
    ai_retry_base_delay: float = 1.0
    request_timeout: float = 60.0

    @property
    def documents_url(self) -> str:
        return self.document_base_url or self.base_url

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from SYSINTEL_* environment variables"""

        defaults = cls()
        return cls(
            base_url=os.getenv("SYSINTEL_BASE_URL", defaults.base_url),
            document_base_url=os.getenv("SYSINTEL_DOCUMENT_BASE_URL") or None,
            data_dir=os.getenv("SYSINTEL_DATA_DIR", defaults.data_dir),
            log_level=os.getenv("SYSINTEL_LOG_LEVEL", defaults.log_level),
            log_format=os.getenv("SYSINTEL_LOG_FORMAT", defaults.log_format),
            service_name=os.getenv("SYSINTEL_SERVICE_NAME", defaults.service_name),
            ingest_path=os.getenv("SYSINTEL_INGEST_PATH", defaults.ingest_path),
            flush_interval_ms=_env_int("SYSINTEL_FLUSH_INTERVAL_MS", defaults.flush_interval_ms),
            batch_limit=_env_int("SYSINTEL_BATCH_LIMIT", defaults.batch_limit),
            max_queue_size=_env_int("SYSINTEL_MAX_QUEUE_SIZE", defaults.max_queue_size),
            sync_interval_ms=_env_int("SYSINTEL_SYNC_INTERVAL_MS", defaults.sync_interval_ms),
            policy_ttl_ms=_env_int("SYSINTEL_POLICY_TTL_MS", defaults.policy_ttl_ms),
            default_credits=_env_int("SYSINTEL_DEFAULT_CREDITS", defaults.default_credits),
            consolidation_interval_ms=_env_int(
                "SYSINTEL_CONSOLIDATION_INTERVAL_MS", defaults.consolidation_interval_ms
            ),
            low_power_interval_ms=_env_int("SYSINTEL_LOW_POWER_INTERVAL_MS", defaults.low_power_interval_ms),
            admin_email=os.getenv("SYSINTEL_ADMIN_EMAIL") or None,
            ai_retries=_env_int("SYSINTEL_AI_RETRIES", defaults.ai_retries),
            ai_retry_base_delay=_env_float("SYSINTEL_AI_RETRY_BASE_DELAY", defaults.ai_retry_base_delay),
            request_timeout=_env_float("SYSINTEL_REQUEST_TIMEOUT", defaults.request_timeout),
        )
