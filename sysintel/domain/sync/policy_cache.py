from typing import Optional
import asyncio
import structlog

from sysintel.domain.models import CachedPolicy, normalize_policy
from sysintel.infrastructure.network import DocumentStore
from sysintel.infrastructure.observability.logging import substrate_logger
from sysintel.infrastructure.runtime.scheduling import Clock
from sysintel.infrastructure.storage import DurableStore, WriteThroughSlot

logger = structlog.get_logger(__name__)

POLICY_DOCUMENT = "system/policy"
POLICY_CACHE_KEY = "policy_cache_v1"
POLICY_TTL_MS = 60_000


class PolicyCache:
    """Global policy document cached in memory and durably with a TTL"""

    def __init__(
        self,
        documents: DocumentStore,
        store: DurableStore,
        clock: Optional[Clock] = None,
        ttl_ms: int = POLICY_TTL_MS
    ):
        self.documents = documents
        self.clock = clock or Clock()
        self.ttl_ms = ttl_ms

        self.policy: Optional[CachedPolicy] = None
        self.fetched_at = 0
        self._slot = WriteThroughSlot(store, POLICY_CACHE_KEY)
        self._lock = asyncio.Lock()

    def _is_fresh(self, stamp: int, now: int) -> bool:
        return stamp > 0 and now - stamp < self.ttl_ms

    async def get_cached_policy(self) -> Optional[CachedPolicy]:
        """Fresh in-memory copy, else fresh durable copy, else the remote document"""

        async with self._lock:
            now = self.clock.epoch_ms()
            if self.policy is not None and self._is_fresh(self.fetched_at, now):
                return self.policy.model_copy(deep=True)

            durable, durable_stamp = self._read_durable()
            if durable is not None and self._is_fresh(durable_stamp, now):
                self.policy = durable
                self.fetched_at = durable_stamp
                return durable.model_copy(deep=True)

            try:
                raw = await self.documents.get_document(POLICY_DOCUMENT)
            except Exception as e:
                # Stale copies of any age are served on fetch failure
                stale = self.policy or durable
                logger.warning("Policy fetch failed", error=str(e), serving_stale=stale is not None)
                return stale.model_copy(deep=True) if stale is not None else None

            policy = normalize_policy(raw)
            if policy is None:
                return None

            self.policy = policy
            self.fetched_at = now
            self._slot.save({"policy": policy.to_store(), "fetchedAt": now})
            substrate_logger.log_sync(source="policy", action="refreshed")
            return policy.model_copy(deep=True)

    def _read_durable(self):
        blob = self._slot.load()
        if blob is None:
            return None, 0
        if not isinstance(blob, dict):
            logger.warning("Discarding malformed policy cache")
            self._slot.clear()
            return None, 0

        policy = normalize_policy(blob.get("policy"))
        stamp = blob.get("fetchedAt")
        if policy is None or isinstance(stamp, bool) or not isinstance(stamp, (int, float)):
            logger.warning("Discarding malformed policy cache")
            self._slot.clear()
            return None, 0
        return policy, int(stamp)

    def invalidate(self):
        self.policy = None
        self.fetched_at = 0

    async def wait_persisted(self):
        await self._slot.flush()
