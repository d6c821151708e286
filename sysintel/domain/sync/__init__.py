from .state_sync import LOCAL_STATE_KEY, StateSyncCache, state_document_path
from .policy_cache import POLICY_CACHE_KEY, POLICY_DOCUMENT, PolicyCache

__all__ = [
    "LOCAL_STATE_KEY", "StateSyncCache", "state_document_path",
    "POLICY_CACHE_KEY", "POLICY_DOCUMENT", "PolicyCache",
]
