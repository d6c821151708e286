from typing import Any, Callable, Dict, List, Optional
import asyncio
import structlog
from pydantic import ValidationError

from sysintel.domain.models import TelemetryEvent, as_list
from sysintel.infrastructure.network import (
    LifecycleHooks, NetworkTransport, ONLINE, RequestError, UNLOAD,
)
from sysintel.infrastructure.observability.logging import metrics, substrate_logger
from sysintel.infrastructure.runtime.scheduling import Scheduler, TimerHandle
from sysintel.infrastructure.security.auth import AuthSession
from sysintel.infrastructure.storage import DurableStore, WriteThroughSlot
from .delivery import DeliveryOutcome, DeliveryResult

logger = structlog.get_logger(__name__)

INGEST_ENDPOINT = "/api/telemetry/ingest"
QUEUE_KEY = "telemetry_queue_v1"
FLUSH_INTERVAL_MS = 10_000
BATCH_LIMIT = 10
MAX_QUEUE_SIZE = 500


class TelemetryTransport:
    """
    Bounded, persisted event queue shipped to the ingest endpoint in batches.

    A flush fires immediately once BATCH_LIMIT events are queued, otherwise
    after FLUSH_INTERVAL_MS. Only one flush runs at a time. Batches leave the
    queue before the POST starts and are not re-queued on failure.
    """

    def __init__(
        self,
        network: NetworkTransport,
        store: DurableStore,
        lifecycle: LifecycleHooks,
        scheduler: Scheduler,
        auth: Optional[AuthSession] = None,
        endpoint: str = INGEST_ENDPOINT,
        flush_interval_ms: int = FLUSH_INTERVAL_MS,
        batch_limit: int = BATCH_LIMIT,
        max_queue_size: int = MAX_QUEUE_SIZE
    ):
        self.network = network
        self.lifecycle = lifecycle
        self.scheduler = scheduler
        self.auth = auth
        self.endpoint = endpoint
        self.flush_interval = flush_interval_ms / 1000
        self.batch_limit = batch_limit
        self.max_queue_size = max_queue_size

        self.queue: List[TelemetryEvent] = []
        self._slot = WriteThroughSlot(store, QUEUE_KEY)
        self._flushing = False
        self._flush_task: Optional[asyncio.Task] = None
        self._timer: Optional[TimerHandle] = None
        self._cached_token: Optional[str] = None
        self._started = False
        self._unsubscribers: List[Callable[[], None]] = []

    # --- lifecycle ---

    def start(self):
        """Load the persisted queue and hook connectivity/unload; idempotent"""

        if self._started:
            return
        self._started = True

        self.queue = self._load_queue()
        self._unsubscribers = [
            self.lifecycle.subscribe(ONLINE, self._on_online),
            self.lifecycle.subscribe(UNLOAD, self.flush_sync),
        ]

        if self.queue:
            logger.info("Restored pending telemetry", count=len(self.queue))
            self._schedule_flush()

    def stop(self):
        self._cancel_timer()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._started = False

    # --- queue ---

    def log_event(self, event: TelemetryEvent):
        """Enqueue an event; never blocks on I/O"""

        self.queue.append(event)

        overflow = len(self.queue) - self.max_queue_size
        if overflow > 0:
            del self.queue[:overflow]
            metrics.increment_counter("telemetry.events_dropped", overflow)
            logger.warning("Telemetry queue full, dropped oldest events", dropped=overflow)

        self._persist()

        if len(self.queue) >= self.batch_limit:
            self._trigger_flush()
        else:
            self._schedule_flush()

    def pending_events(self) -> List[TelemetryEvent]:
        return list(self.queue)

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    # --- flushing ---

    async def flush(self) -> DeliveryResult:
        """Ship one batch from the head of the queue"""

        if self._flushing:
            return DeliveryResult(outcome=DeliveryOutcome.SKIPPED)
        if not self.queue:
            return DeliveryResult(outcome=DeliveryOutcome.EMPTY)

        if not self.lifecycle.is_online():
            self._persist()
            self._schedule_flush()
            return DeliveryResult(outcome=DeliveryOutcome.OFFLINE)

        self._flushing = True
        try:
            batch = self._take_batch()
            self._persist()

            token = await self._resolve_token()
            payload = {"token": token, "events": [event.to_wire() for event in batch]}

            try:
                await self.network.post_json(self.endpoint, payload)
                result = DeliveryResult(outcome=DeliveryOutcome.DELIVERED, delivered=len(batch))
            except RequestError as e:
                result = DeliveryResult(
                    outcome=DeliveryOutcome.HTTP_ERROR,
                    status_code=e.status,
                    error=str(e)
                )
            except Exception as e:
                result = DeliveryResult(outcome=DeliveryOutcome.NETWORK_ERROR, error=str(e))
        finally:
            self._flushing = False

        substrate_logger.log_flush(
            outcome=result.outcome.value,
            batch_size=len(batch),
            remaining=len(self.queue),
            status_code=result.status_code,
            error=result.error
        )
        metrics.increment_counter(f"telemetry.flush.{result.outcome.value}")

        if self.queue:
            self._schedule_flush()

        return result

    def flush_sync(self) -> int:
        """Teardown path: beacon one batch, persist the rest synchronously"""

        self._cancel_timer()
        if not self.queue:
            return 0

        batch = self._take_batch()
        if self.queue:
            self._slot.save_now(self._serialize_queue())
        else:
            self._slot.clear()

        payload = {"token": self._cached_token, "events": [event.to_wire() for event in batch]}
        try:
            dispatched = self.network.send_beacon(self.endpoint, payload)
        except Exception as e:
            logger.warning("Beacon dispatch raised", error=str(e))
            dispatched = False

        logger.info("Unload flush", dispatched=dispatched, batch_size=len(batch), remaining=len(self.queue))
        return len(batch) if dispatched else 0

    def _take_batch(self) -> List[TelemetryEvent]:
        batch = self.queue[:self.batch_limit]
        del self.queue[:len(batch)]
        return batch

    def _trigger_flush(self):
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = self.scheduler.spawn(self.flush())

    def _schedule_flush(self):
        if self._timer is not None and not self._timer.cancelled:
            return
        self._timer = self.scheduler.call_later(self.flush_interval, self._on_timer)

    def _on_timer(self):
        self._timer = None
        self._trigger_flush()

    def _on_online(self):
        self._trigger_flush()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _resolve_token(self) -> Optional[str]:
        if self.auth is None:
            return self._cached_token
        try:
            self._cached_token = await self.auth.get_token()
        except Exception as e:
            logger.debug("Token fetch failed, using cached token", error=str(e))
        return self._cached_token

    # --- persistence ---

    def _serialize_queue(self) -> List[Dict[str, Any]]:
        return [event.to_wire() for event in self.queue]

    def _persist(self):
        metrics.set_gauge("telemetry.queue_depth", len(self.queue))
        self._slot.save(self._serialize_queue())

    def _load_queue(self) -> List[TelemetryEvent]:
        events = []
        for item in as_list(self._slot.load()):
            try:
                events.append(TelemetryEvent.model_validate(item))
            except ValidationError:
                logger.warning("Discarding malformed queued event")
        return events[-self.max_queue_size:]

    async def wait_persisted(self):
        await self._slot.flush()
