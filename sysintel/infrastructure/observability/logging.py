import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "sysintel"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    context = structlog.contextvars.get_contextvars()

    # AuthSession.sign_in binds these
    session_id = context.get("session_id")
    if session_id:
        event_dict.setdefault("session_id", session_id)

    uid = context.get("uid")
    if uid:
        event_dict.setdefault("uid", uid)

    return event_dict


class SubstrateLogger:
    """Specialized logger for telemetry, sync and AI proxy operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_flush(
        self,
        outcome: str,
        batch_size: int,
        remaining: int,
        status_code: Optional[int] = None,
        error: Optional[str] = None
    ):
        """Log a telemetry flush outcome"""

        self.logger.info(
            "telemetry_flush",
            outcome=outcome,
            batch_size=batch_size,
            remaining=remaining,
            status_code=status_code,
            error=error
        )

    def log_ai_request(
        self,
        app_id: str,
        model: str,
        attempt: int,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log an AI proxy request attempt or outcome"""

        self.logger.info(
            "ai_request",
            app_id=app_id,
            model=model,
            attempt=attempt,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_sync(
        self,
        source: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log state and policy cache updates"""

        self.logger.info(
            "sync_update",
            source=source,
            action=action,
            details=details or {}
        )


# Global logger instance
substrate_logger = SubstrateLogger("sysintel")


def _series(name: str, tags: Optional[Dict[str, str]]) -> str:
    if not tags:
        return name
    labels = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{labels}}}"


class MetricsCollector:
    """In-process counters, gauges and latency aggregates keyed by name and tags"""

    def __init__(self):
        self.latencies: Dict[str, Dict[str, float]] = {}
        self.counters: Dict[str, int] = {}
        self.gauges: Dict[str, float] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        series = _series(operation, tags)
        stats = self.latencies.setdefault(series, {"count": 0, "total": 0.0, "max": 0.0})
        stats["count"] += 1
        stats["total"] += duration_ms
        stats["max"] = max(stats["max"], duration_ms)

        substrate_logger.logger.debug("metric", kind="latency", series=series, duration_ms=duration_ms)

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        series = _series(name, tags)
        self.counters[series] = self.counters.get(series, 0) + value

        substrate_logger.logger.debug("metric", kind="counter", series=series, value=value)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[_series(name, tags)] = value

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Snapshot with mean latency per series"""

        return {
            "latency": {
                series: {
                    "count": stats["count"],
                    "avg_ms": round(stats["total"] / stats["count"], 2),
                    "max_ms": stats["max"],
                }
                for series, stats in self.latencies.items()
            },
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
        }

    def reset(self):
        self.latencies.clear()
        self.counters.clear()
        self.gauges.clear()


# Global metrics collector
metrics = MetricsCollector()
