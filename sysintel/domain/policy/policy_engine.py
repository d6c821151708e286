from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4
import math
import structlog

from sysintel.domain.models import (
    Credits, EventType, FactSource, Insight, InsightType, LearnedFact,
    MemoryScope, SystemState, TelemetryEvent, DEFAULT_CREDITS,
    merge_system_state, normalize_system_state,
)
from sysintel.domain.models.telemetry_event import context_for
from sysintel.infrastructure.network.lifecycle import UNLOAD, LifecycleHooks
from sysintel.infrastructure.runtime.scheduling import Clock, PeriodicTimer, Scheduler
from sysintel.infrastructure.security.auth import AuthSession
from sysintel.infrastructure.storage import DurableStore, WriteThroughSlot

logger = structlog.get_logger(__name__)

STATE_KEY = "core_state_v3"
LOW_POWER_KEY = "low_power_mode"
SESSION_STATUS_KEY = "sys_last_session_status"
SYSTEM_APP_ID = "SYSTEM"

BASE_TEMPERATURE = 0.7
LATE_NIGHT_BOOST = 0.1
FAST_REGEN_BOOST = 0.3
FAST_REGEN_WINDOW_MS = 5000
RAW_LABEL_LIMIT = 40
EVENT_BUFFER_CAP = 500
EVENT_BUFFER_KEEP = 250
MAX_FACTS = 50
MAX_INSIGHTS = 20
MAX_NEGATIVES_IN_PROMPT = 3
ABANDON_WINDOW_MS = 10_000


class Scores:
    """Heuristic value assessment per interaction"""
    DWELL_SHORT = 0
    DWELL_LONG = 5
    COPY = 10
    DOWNLOAD = 20
    EDIT = 5
    REGENERATE_FAST = -10
    REGENERATE_SLOW = -2
    SUCCESS = 25
    DISLIKE = -10
    COMPLETION = 5
    ERROR = -5
    INSTALL = 15


_FLAT_SCORES = {
    EventType.COPY: Scores.COPY,
    EventType.DOWNLOAD: Scores.DOWNLOAD,
    EventType.SUCCESS: Scores.SUCCESS,
    EventType.DISLIKE: Scores.DISLIKE,
    EventType.INSTALL_APP: Scores.INSTALL,
    EventType.COMPLETION: Scores.COMPLETION,
    EventType.ERROR: Scores.ERROR,
}

_STYLE_DIRECTIVES = {
    "A": "Style: Direct and Professional.",
    "B": "Style: Conversational and Engaging.",
}


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


class PolicyEngine:
    """
    Single mutable source of truth for SystemState during a session.

    Bridges UI actions to the telemetry transport and derives generation
    parameters. Every mutation ends with a fire-and-forget durable write.
    """

    def __init__(
        self,
        store: DurableStore,
        transport: Any,
        clock: Optional[Clock] = None,
        auth: Optional[AuthSession] = None,
        scheduler: Optional[Scheduler] = None,
        default_credits: int = DEFAULT_CREDITS,
        consolidation_interval_ms: int = 10_000,
        low_power_interval_ms: int = 120_000,
        settings_store: Optional[DurableStore] = None,
        lifecycle: Optional[LifecycleHooks] = None
    ):
        self.transport = transport
        self.clock = clock or Clock()
        self.auth = auth
        self.scheduler = scheduler
        self.default_credits = default_credits
        self.consolidation_interval = consolidation_interval_ms / 1000
        self.low_power_interval = low_power_interval_ms / 1000
        self.lifecycle = lifecycle

        self.state = SystemState.defaults(self.clock.today())
        self.state.credits.count = default_credits
        self.event_buffer: List[TelemetryEvent] = []
        self.is_initialized = False
        self.low_power_mode = False
        self._slot = WriteThroughSlot(store, STATE_KEY)
        self._low_power_slot = WriteThroughSlot(settings_store or store, LOW_POWER_KEY)
        self._session_status_slot = WriteThroughSlot(settings_store or store, SESSION_STATUS_KEY)
        self._consolidation: Optional[PeriodicTimer] = None
        self._local_session_id = uuid4().hex

    # --- lifecycle ---

    def init(self):
        """Load persisted state over defaults and apply the daily credit reset; idempotent"""

        if self.is_initialized:
            return

        saved = self._slot.load()
        if saved is not None:
            self.state = normalize_system_state(saved, today=self.clock.today())

        low_power = self._low_power_slot.load()
        if isinstance(low_power, bool):
            self.low_power_mode = low_power

        if self.lifecycle is not None:
            self.lifecycle.subscribe(UNLOAD, self.handle_unload)

        self.is_initialized = True
        self._check_credit_reset()

    def _current_interval(self) -> float:
        return self.low_power_interval if self.low_power_mode else self.consolidation_interval

    def start_consolidation(self):
        """Arm the periodic pattern analysis; needs a scheduler and a running loop"""

        if self.scheduler is None:
            return
        if self._consolidation is None:
            self._consolidation = PeriodicTimer(
                self.scheduler,
                self._current_interval(),
                self._consolidation_job,
                name="consolidation"
            )
        self._consolidation.start()

    def set_low_power_mode(self, enabled: bool):
        """Persist the flag; low power stretches consolidation and skips per-event saves"""

        if not self.is_initialized:
            self.init()

        self.low_power_mode = enabled
        self._low_power_slot.save(enabled)
        logger.info("Low power mode changed", enabled=enabled)

        if self._consolidation is None:
            return
        self._consolidation.interval = self._current_interval()
        if self._consolidation.active:
            self._consolidation.stop()
            self._consolidation.start()

    def handle_unload(self):
        """Mark the session abandoned when it ends on a negative score right after a generation"""

        if self.low_power_mode:
            self._slot.save_now(self.state.to_store())

        now = self.clock.epoch_ms()
        if now - self.state.last_generation_timestamp < ABANDON_WINDOW_MS and self.state.session_score < 0:
            self._session_status_slot.save_now("abandoned")
            logger.info("Session marked abandoned", session_score=self.state.session_score)

    def get_last_session_status(self) -> Optional[str]:
        status = self._session_status_slot.load()
        return status if isinstance(status, str) else None

    def stop(self):
        if self._consolidation is not None:
            self._consolidation.stop()

    def _check_credit_reset(self):
        today = self.clock.today().isoformat()
        if self.state.credits.last_reset != today:
            self.state.credits = Credits(count=self.default_credits, last_reset=today)
            logger.info("Daily credits reset", count=self.default_credits)
            self._save()

    # --- tracking ---

    def track_interaction(
        self,
        app_id: str,
        action: Union[EventType, str],
        metadata: Optional[Any] = None
    ) -> Optional[TelemetryEvent]:
        """Update local counters, build the event and hand it to the transport"""

        if not self.is_initialized:
            self.init()

        event_type = EventType(action)

        # Only ambient UI noise is optional; product actions are always recorded
        if not self.state.telemetry_enabled and event_type == EventType.SYS_EVENT:
            return None

        if metadata is not None and not isinstance(metadata, dict):
            metadata = {"value": metadata}
        meta = metadata or {}

        now = self.clock.epoch_ms()
        score = self._score(event_type, meta, now)
        self.state.session_score += score

        label = meta.get("label")
        event = TelemetryEvent(
            app_id=app_id,
            context=context_for(event_type),
            event_type=event_type,
            label=label if isinstance(label, str) else event_type.value,
            timestamp=now,
            meta=metadata,
            uid=self.auth.uid if self.auth else None,
            session_id=self._session_id(),
            score=score
        )

        self.event_buffer.append(event)
        if len(self.event_buffer) > EVENT_BUFFER_CAP:
            self.event_buffer = self.event_buffer[-EVENT_BUFFER_KEEP:]

        self.transport.log_event(event)
        if not self.low_power_mode:
            self._save()
        return event

    def track_raw_event(self, event_type: str, label: str) -> Optional[TelemetryEvent]:
        """Ambient DOM activity (click, keypress, scroll)"""

        if not self.state.telemetry_enabled:
            return None
        clean_label = label[:RAW_LABEL_LIMIT] + "..." if len(label) > RAW_LABEL_LIMIT else label
        return self.track_interaction(
            SYSTEM_APP_ID,
            EventType.SYS_EVENT,
            {"type": event_type, "label": clean_label}
        )

    def _score(self, event_type: EventType, meta: Dict[str, Any], now: int) -> int:
        if event_type == EventType.REGENERATE:
            if now - self.state.last_generation_timestamp < FAST_REGEN_WINDOW_MS:
                # Fast regenerate flips the prompt variant
                self.state.active_prompt_variant = "B" if self.state.active_prompt_variant == "A" else "A"
                return Scores.REGENERATE_FAST
            return Scores.REGENERATE_SLOW

        if event_type == EventType.GENERATE:
            self.state.last_generation_timestamp = now
            return 0

        if event_type == EventType.DWELL:
            return Scores.DWELL_LONG if _number(meta.get("duration")) > 5 else Scores.DWELL_SHORT

        if event_type == EventType.EDIT:
            original, final = meta.get("original"), meta.get("final")
            if isinstance(original, str) and isinstance(final, str) and original and final:
                if abs(len(original) - len(final)) < 20:
                    return Scores.EDIT
            return 0

        if event_type == EventType.COMPLETION:
            self.state.request_count += 1
            self.state.total_input_chars += int(_number(meta.get("inputLength")))
            self.state.total_output_chars += int(_number(meta.get("outputLength")))

        return _FLAT_SCORES.get(event_type, 0)

    def _session_id(self) -> str:
        if self.auth is not None and self.auth.session_id:
            return self.auth.session_id
        return self._local_session_id

    # --- prompt engineering ---

    def get_time_context(self) -> str:
        hour = self.clock.now().hour
        if 5 <= hour < 12:
            return "Morning: Focus on productivity, clarity, and planning."
        if 12 <= hour < 18:
            return "Afternoon: Focus on execution, energy, and brevity."
        return "Night: Focus on creativity, reflection, and exploration."

    def get_optimized_prompt(
        self,
        original_prompt: str,
        app_id: str,
        scope: MemoryScope = MemoryScope.GLOBAL
    ) -> str:
        """Prefix the prompt with style, time, user-context and avoid directives"""

        scope = MemoryScope(scope)
        directives = []

        style = _STYLE_DIRECTIVES.get(self.state.active_prompt_variant)
        if style:
            directives.append(style)

        time_context = self.get_time_context()
        if time_context:
            directives.append(f"Mode: {time_context}")

        facts = [
            fact.content for fact in self.state.learned_facts
            if fact.scope in (MemoryScope.GLOBAL, scope)
        ]
        if facts:
            directives.append(f"User Context: {'. '.join(facts)}.")

        negatives = self.state.negative_constraints.get(app_id) or []
        if negatives:
            directives.append(f"AVOID: {', '.join(negatives[-MAX_NEGATIVES_IN_PROMPT:])}.")

        if not directives:
            return original_prompt
        return f"[SYSTEM: {' '.join(directives)}] {original_prompt}"

    def get_dynamic_temperature(self) -> float:
        hour = self.clock.now().hour
        temperature = BASE_TEMPERATURE
        if hour > 20 or hour < 4:
            temperature += LATE_NIGHT_BOOST

        if self.event_buffer and self.event_buffer[-1].score == Scores.REGENERATE_FAST:
            temperature = min(1.0, temperature + FAST_REGEN_BOOST)
        return round(temperature, 2)

    # --- credits ---

    def get_credits(self) -> float:
        if self.auth is not None and self.auth.is_admin():
            return math.inf
        return self.state.credits.count

    def use_credit(self, amount: int = 1) -> bool:
        if self.auth is not None and self.auth.is_admin():
            return True
        if self.state.credits.count < amount:
            return False
        self.state.credits.count -= amount
        self._save()
        return True

    # --- state management ---

    def update_state_from_sync(self, partial: Mapping[str, Any]):
        """Shallow-merge a partial state over the working state; absent fields stay local"""

        self.state = merge_system_state(self.state, partial)
        self._save()

    def toggle_telemetry(self, enabled: bool):
        self.state.telemetry_enabled = enabled
        self._save()

    def add_fact(
        self,
        content: str,
        scope: MemoryScope = MemoryScope.GLOBAL,
        confidence: float = 0.5,
        source: FactSource = FactSource.EXPLICIT_SAVE
    ) -> bool:
        """Record a learned fact; duplicates by content are ignored"""

        if any(fact.content == content for fact in self.state.learned_facts):
            return False

        self.state.learned_facts.append(LearnedFact(
            content=content,
            scope=scope,
            confidence=confidence,
            source=source,
            timestamp=self.clock.epoch_ms()
        ))
        if len(self.state.learned_facts) > MAX_FACTS:
            weakest = min(self.state.learned_facts, key=lambda fact: fact.confidence)
            self.state.learned_facts.remove(weakest)

        self._save()
        return True

    def forget(self, timestamp: int):
        self.state.learned_facts = [f for f in self.state.learned_facts if f.timestamp != timestamp]
        self._save()

    def add_negative_constraint(self, app_id: str, constraint: str):
        self.state.negative_constraints.setdefault(app_id, []).append(constraint)
        self._save()

    def lobotomy(self):
        """Hard reset to defaults"""

        self.state = SystemState.defaults(self.clock.today())
        self.state.credits.count = self.default_credits
        self.event_buffer = []
        logger.warning("System state reset to defaults")
        self._save()

    # --- read accessors ---

    def get_state(self) -> SystemState:
        return self.state.model_copy(deep=True)

    def get_memory(self) -> List[LearnedFact]:
        return [fact.model_copy() for fact in self.state.learned_facts]

    def get_recent_events(self, limit: int = 20) -> List[TelemetryEvent]:
        return list(reversed(self.event_buffer[-limit:]))

    def get_metrics(self) -> Dict[str, Any]:
        state = self.state
        efficiency = (
            round(state.total_output_chars / (state.total_input_chars + 1) * 100)
            if state.total_output_chars > 0 else 0
        )
        return {
            "score": state.session_score,
            "facts": len(state.learned_facts),
            "variant": state.active_prompt_variant,
            "keywords": len(state.keyword_weights),
            "archetype": state.user_archetype,
            "conciseness": efficiency or 100,
            "interactions": state.request_count,
            "savings": round(state.session_score * 12),
            "totalTokens": round((state.total_input_chars + state.total_output_chars) / 4),
            "telemetryEnabled": state.telemetry_enabled,
            "insights": [insight.to_store() for insight in state.insights],
            "credits": self.get_credits(),
        }

    # --- consolidation ---

    async def _consolidation_job(self):
        self.consolidate()

    def consolidate(self):
        """Derive behavioral insights from the recent event buffer"""

        if not self.event_buffer:
            return
        self._analyze_patterns()
        self._save()

    def _analyze_patterns(self):
        recent = self.event_buffer[-50:]
        if len(recent) < 5:
            return

        duration_sec = (recent[-1].timestamp - recent[0].timestamp) / 1000
        velocity = len(recent) / (duration_sec or 1)

        if velocity > 3.0:
            self._add_insight(
                "High-velocity interaction detected. User is likely in a hurry or frustrated.",
                InsightType.PATTERN, 0.85
            )
        elif velocity < 0.2:
            self._add_insight("Low-velocity state. User is reading or thinking.", InsightType.BEHAVIOR, 0.6)

        apps = {event.app_id for event in recent if event.app_id != SYSTEM_APP_ID}
        if len(apps) >= 3:
            self._add_insight("Rapid context switching between apps observed.", InsightType.PATTERN, 0.9)

        errors = sum(1 for event in recent if event.event_type == EventType.ERROR)
        if errors > 2:
            self._add_insight(
                "Multiple errors detected. System stability or API quota may be impacting UX.",
                InsightType.ANOMALY, 0.95
            )

    def _add_insight(self, message: str, insight_type: InsightType, confidence: float):
        if any(insight.message == message for insight in self.state.insights[:5]):
            return

        now = self.clock.epoch_ms()
        self.state.insights.insert(0, Insight(
            id=f"{now}-{uuid4().hex[:6]}",
            type=insight_type,
            message=message,
            confidence=confidence,
            timestamp=now
        ))
        if len(self.state.insights) > MAX_INSIGHTS:
            self.state.insights.pop()

    # --- persistence ---

    def _save(self):
        self._slot.save(self.state.to_store())

    async def wait_persisted(self):
        await self._slot.flush()
