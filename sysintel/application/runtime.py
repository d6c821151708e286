from typing import Optional
from pathlib import Path
import structlog

from sysintel.config import Settings
from sysintel.domain.ai import AIProxy
from sysintel.domain.policy import PolicyEngine
from sysintel.domain.sync import PolicyCache, StateSyncCache
from sysintel.domain.telemetry import TelemetryTransport
from sysintel.infrastructure.network import (
    DocumentStore, HttpDocumentStore, HttpNetworkTransport, LifecycleHooks, NetworkTransport,
)
from sysintel.infrastructure.observability.logging import metrics, setup_logging
from sysintel.infrastructure.runtime.scheduling import Clock, Scheduler
from sysintel.infrastructure.security.auth import AuthSession
from sysintel.infrastructure.storage import DurableStore, FileDurableStore

logger = structlog.get_logger(__name__)


class IntelligenceRuntime:
    """
    Wires the telemetry transport, policy engine, caches and AI proxy together.

    Collaborators default to the HTTP and file-backed implementations built
    from Settings; any of them can be passed in instead.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        network: Optional[NetworkTransport] = None,
        documents: Optional[DocumentStore] = None,
        local_store: Optional[DurableStore] = None,
        memory_store: Optional[DurableStore] = None,
        lifecycle: Optional[LifecycleHooks] = None,
        auth: Optional[AuthSession] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None
    ):
        self.settings = settings or Settings()
        s = self.settings

        self._owned_clients = []
        if network is None:
            network = HttpNetworkTransport(s.base_url, timeout=s.request_timeout)
            self._owned_clients.append(network)
        if documents is None:
            documents = HttpDocumentStore(s.documents_url)
            self._owned_clients.append(documents)

        data_dir = Path(s.data_dir)
        self.local_store = local_store or FileDurableStore(str(data_dir / "local"))
        self.memory_store = memory_store or FileDurableStore(str(data_dir / "memory"))

        self.network = network
        self.documents = documents
        self.lifecycle = lifecycle or LifecycleHooks()
        self.auth = auth or AuthSession(admin_email=s.admin_email)
        self.scheduler = scheduler or Scheduler()
        self.clock = clock or Clock()

        self.transport = TelemetryTransport(
            self.network,
            self.local_store,
            self.lifecycle,
            self.scheduler,
            auth=self.auth,
            endpoint=s.ingest_path,
            flush_interval_ms=s.flush_interval_ms,
            batch_limit=s.batch_limit,
            max_queue_size=s.max_queue_size
        )
        self.engine = PolicyEngine(
            self.memory_store,
            self.transport,
            clock=self.clock,
            auth=self.auth,
            scheduler=self.scheduler,
            default_credits=s.default_credits,
            consolidation_interval_ms=s.consolidation_interval_ms,
            low_power_interval_ms=s.low_power_interval_ms,
            settings_store=self.local_store,
            lifecycle=self.lifecycle
        )
        self.state_sync = StateSyncCache(
            self.documents,
            self.local_store,
            self.auth,
            self.scheduler,
            clock=self.clock,
            refresh_interval_ms=s.sync_interval_ms
        )
        self.policy_cache = PolicyCache(
            self.documents,
            self.local_store,
            clock=self.clock,
            ttl_ms=s.policy_ttl_ms
        )
        self.ai = AIProxy(
            self.network,
            self.engine,
            policy_cache=self.policy_cache,
            retries=s.ai_retries,
            base_delay=s.ai_retry_base_delay,
            clock=self.clock
        )

        self.state_sync.subscribe(self.engine.update_state_from_sync)
        self.started = False

    @classmethod
    def from_env(cls) -> "IntelligenceRuntime":
        settings = Settings.from_env()
        setup_logging(settings.log_level, settings.log_format, settings.service_name)
        return cls(settings)

    async def startup(self, install_exit_hook: bool = False):
        """Load persisted state, start timers and pull the synced state once"""

        if self.started:
            return
        self.started = True

        self.engine.init()
        self.transport.start()
        self.engine.start_consolidation()
        await self.state_sync.init()

        if install_exit_hook:
            self.lifecycle.install_exit_hook()

        logger.info(
            "Intelligence runtime started",
            pending_events=len(self.transport.pending_events()),
            credits=self.engine.get_credits()
        )

    async def shutdown(self):
        """Stop timers, attempt a last flush and close owned clients"""

        if not self.started:
            return
        self.started = False

        self.state_sync.stop()
        self.engine.stop()

        result = await self.transport.flush()
        self.transport.stop()

        await self.engine.wait_persisted()
        await self.transport.wait_persisted()
        await self.state_sync.wait_persisted()
        await self.policy_cache.wait_persisted()
        await self.scheduler.drain()

        for client in self._owned_clients:
            await client.aclose()
        self._owned_clients = []

        logger.info(
            "Intelligence runtime stopped",
            last_flush=result.outcome.value,
            metrics=metrics.get_metrics_summary()
        )
