from typing import Any, Callable, Dict, List, Optional
import asyncio
import copy
import structlog

from sysintel.domain.models import SystemState, normalize_system_state
from sysintel.infrastructure.network import DocumentStore
from sysintel.infrastructure.observability.logging import substrate_logger
from sysintel.infrastructure.runtime.scheduling import Clock, PeriodicTimer, Scheduler
from sysintel.infrastructure.security.auth import AuthSession
from sysintel.infrastructure.storage import DurableStore, WriteThroughSlot

logger = structlog.get_logger(__name__)

LOCAL_STATE_KEY = "core_state_v3"
REFRESH_INTERVAL_MS = 60_000

# Listeners receive only the fields present in the fetched document
StateListener = Callable[[Dict[str, Any]], None]


def state_document_path(uid: str) -> str:
    return f"users/{uid}/system/core_memory"


class StateSyncCache:
    """Keeps a local copy of the server-computed SystemState document"""

    def __init__(
        self,
        documents: DocumentStore,
        store: DurableStore,
        auth: AuthSession,
        scheduler: Scheduler,
        clock: Optional[Clock] = None,
        refresh_interval_ms: int = REFRESH_INTERVAL_MS
    ):
        self.documents = documents
        self.auth = auth
        self.scheduler = scheduler
        self.clock = clock or Clock()
        self.refresh_interval = refresh_interval_ms / 1000

        self.cached_state: Optional[SystemState] = None
        self.has_started = False
        self.listeners: List[StateListener] = []
        self._slot = WriteThroughSlot(store, LOCAL_STATE_KEY)
        self._timer: Optional[PeriodicTimer] = None
        self._lock = asyncio.Lock()

    async def init(self):
        """Load the durable copy, refresh once, then refresh periodically; idempotent"""

        if self.has_started:
            return
        self.has_started = True

        self._load_cached_state()
        await self.refresh()

        self._timer = PeriodicTimer(self.scheduler, self.refresh_interval, self.refresh, name="state_sync")
        self._timer.start()

    def stop(self):
        if self._timer is not None:
            self._timer.stop()

    def subscribe(self, listener: StateListener):
        self.listeners.append(listener)

    async def refresh(self) -> bool:
        """Pull the canonical document; a failed or empty fetch leaves the cache alone"""

        uid = self.auth.uid
        if not uid:
            return False

        async with self._lock:
            try:
                latest = await self.documents.get_document(state_document_path(uid))
            except Exception as e:
                logger.warning("State sync failed", uid=uid, error=str(e))
                return False
            if not isinstance(latest, dict):
                return False

            state = normalize_system_state(latest, today=self.clock.today())
            self.cached_state = state
            self._slot.save(state.to_store())

        substrate_logger.log_sync(source="state", action="refreshed", details={"uid": uid})

        for listener in list(self.listeners):
            try:
                listener(copy.deepcopy(latest))
            except Exception as e:
                logger.error("State listener failed", error=str(e))
        return True

    def get_state(self) -> Optional[SystemState]:
        """Deep copy of the cached state, or None before the first load"""

        if self.cached_state is None:
            return None
        return self.cached_state.model_copy(deep=True)

    def _load_cached_state(self):
        raw = self._slot.load()
        if raw is None:
            return
        self.cached_state = normalize_system_state(raw, today=self.clock.today())
        substrate_logger.log_sync(source="state", action="loaded_local")

    async def wait_persisted(self):
        await self._slot.flush()
