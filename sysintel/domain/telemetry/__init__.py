from .delivery import DeliveryOutcome, DeliveryResult
from .transport import (
    BATCH_LIMIT, FLUSH_INTERVAL_MS, INGEST_ENDPOINT, MAX_QUEUE_SIZE, QUEUE_KEY,
    TelemetryTransport,
)

__all__ = [
    "DeliveryOutcome", "DeliveryResult",
    "BATCH_LIMIT", "FLUSH_INTERVAL_MS", "INGEST_ENDPOINT", "MAX_QUEUE_SIZE", "QUEUE_KEY",
    "TelemetryTransport",
]
