from .telemetry_event import EventContext, EventType, TelemetryEvent
from .system_state import (
    DEFAULT_CREDITS, Credits, FactSource, Insight, InsightType,
    LearnedFact, MemoryScope, SystemState,
)
from .policy import CachedPolicy
from .ai import GenerateRequest, GenerateResponse, VideoRequest, VideoResponse
from .normalize import as_list, merge_system_state, normalize_policy, normalize_system_state

__all__ = [
    "EventContext", "EventType", "TelemetryEvent",
    "DEFAULT_CREDITS", "Credits", "FactSource", "Insight", "InsightType",
    "LearnedFact", "MemoryScope", "SystemState",
    "CachedPolicy",
    "GenerateRequest", "GenerateResponse", "VideoRequest", "VideoResponse",
    "as_list", "merge_system_state", "normalize_policy", "normalize_system_state",
]
