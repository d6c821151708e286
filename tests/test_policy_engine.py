from datetime import datetime
from unittest.mock import Mock
import json
import math

import pytest

from sysintel.domain.models import EventType, InsightType, MemoryScope
from sysintel.domain.policy import LOW_POWER_KEY, PolicyEngine, SESSION_STATUS_KEY, STATE_KEY, Scores
from sysintel.infrastructure.network import LifecycleHooks
from sysintel.infrastructure.security.auth import AuthSession, Identity
from sysintel.infrastructure.storage import MemoryDurableStore

from conftest import FakeScheduler


def saved_state(**fields):
    return {STATE_KEY: json.dumps(fields)}


@pytest.fixture
def recorder():
    return Mock()


@pytest.fixture
def engine(memory_store, recorder, clock, auth, scheduler):
    engine = PolicyEngine(memory_store, recorder, clock=clock, auth=auth, scheduler=scheduler)
    engine.init()
    engine.state.active_prompt_variant = "A"
    return engine


class TestInitAndCredits:
    def test_credits_reset_on_new_day(self, recorder, clock, auth):
        store = MemoryDurableStore(saved_state(credits={"count": 3, "lastReset": "2026-03-09"}))
        engine = PolicyEngine(store, recorder, clock=clock, auth=auth)

        engine.init()

        assert engine.get_credits() == 20
        assert engine.state.credits.last_reset == "2026-03-10"
        assert json.loads(store.entries[STATE_KEY])["credits"]["lastReset"] == "2026-03-10"

    def test_credits_kept_on_same_day(self, recorder, clock, auth):
        store = MemoryDurableStore(saved_state(credits={"count": 3, "lastReset": "2026-03-10"}))
        engine = PolicyEngine(store, recorder, clock=clock, auth=auth)

        engine.init()

        assert engine.get_credits() == 3

    def test_init_twice_is_idempotent(self, recorder, clock, auth):
        scheduler = FakeScheduler()
        store = MemoryDurableStore(saved_state(credits={"count": 3, "lastReset": "2026-03-09"}))
        engine = PolicyEngine(store, recorder, clock=clock, auth=auth, scheduler=scheduler)

        engine.init()
        engine.start_consolidation()
        assert engine.use_credit()

        engine.init()
        engine.start_consolidation()

        assert engine.get_credits() == 19
        assert len(scheduler.armed()) == 1
        assert scheduler.armed()[0].delay == 10

    def test_admin_has_unlimited_credits(self, memory_store, recorder, clock):
        auth = AuthSession(admin_email="Admin@Example.com")
        auth.sign_in(Identity(uid="root", email="admin@example.com"))
        engine = PolicyEngine(memory_store, recorder, clock=clock, auth=auth)
        engine.init()

        assert engine.get_credits() == math.inf
        assert engine.use_credit(100)
        assert engine.state.credits.count == 20
        assert engine.get_metrics()["credits"] == math.inf

    def test_use_credit_refuses_when_exhausted(self, engine):
        engine.state.credits.count = 1
        assert engine.use_credit()
        assert not engine.use_credit()
        assert engine.get_credits() == 0

    def test_default_credits_is_configurable(self, memory_store, recorder, clock):
        engine = PolicyEngine(memory_store, recorder, clock=clock, default_credits=5)
        engine.init()
        assert engine.get_credits() == 5


class TestTracking:
    def test_event_is_built_and_handed_to_transport(self, engine, recorder):
        event = engine.track_interaction("lyrics_ai", "copy", {"label": "Copied chorus"})

        recorder.log_event.assert_called_once_with(event)
        assert event.app_id == "lyrics_ai"
        assert event.event_type == EventType.COPY
        assert event.label == "Copied chorus"
        assert event.uid == "user-1"
        assert event.session_id == "sess-1"
        assert event.score == Scores.COPY
        assert engine.state.session_score == Scores.COPY

    def test_state_is_persisted_after_tracking(self, engine, memory_store):
        engine.track_interaction("sell_it", EventType.DOWNLOAD)
        stored = json.loads(memory_store.entries[STATE_KEY])
        assert stored["sessionScore"] == Scores.DOWNLOAD

    def test_sys_events_suppressed_when_telemetry_disabled(self, engine, recorder):
        engine.toggle_telemetry(False)

        assert engine.track_raw_event("click", "Save button") is None
        assert engine.track_interaction("SYSTEM", "sys_event") is None
        assert engine.track_interaction("sell_it", "copy") is not None
        assert recorder.log_event.call_count == 1

    def test_raw_event_label_is_truncated(self, engine):
        event = engine.track_raw_event("click", "x" * 45)

        assert event.app_id == "SYSTEM"
        assert event.event_type == EventType.SYS_EVENT
        assert event.meta["label"] == "x" * 40 + "..."
        assert event.meta["type"] == "click"

    def test_fast_regenerate_flips_variant(self, engine, clock):
        engine.track_interaction("lyrics_ai", "generate")
        clock.advance(2000)
        event = engine.track_interaction("lyrics_ai", "regenerate")

        assert event.score == Scores.REGENERATE_FAST
        assert engine.state.active_prompt_variant == "B"

    def test_slow_regenerate_keeps_variant(self, engine, clock):
        engine.track_interaction("lyrics_ai", "generate")
        clock.advance(6000)
        event = engine.track_interaction("lyrics_ai", "regenerate")

        assert event.score == Scores.REGENERATE_SLOW
        assert engine.state.active_prompt_variant == "A"

    def test_dwell_and_edit_scores(self, engine):
        assert engine.track_interaction("content_ai", "dwell", {"duration": 8}).score == Scores.DWELL_LONG
        assert engine.track_interaction("content_ai", "dwell", {"duration": 2}).score == Scores.DWELL_SHORT

        small_edit = {"original": "Hello world", "final": "Hello there world"}
        large_edit = {"original": "Hi", "final": "Hi" + "!" * 30}
        assert engine.track_interaction("content_ai", "edit", small_edit).score == Scores.EDIT
        assert engine.track_interaction("content_ai", "edit", large_edit).score == 0

    def test_completion_updates_counters(self, engine):
        engine.track_interaction("chat", "completion", {"inputLength": 100, "outputLength": 50, "latency": 900})

        metrics = engine.get_metrics()
        assert metrics["interactions"] == 1
        assert metrics["conciseness"] == 50
        assert metrics["totalTokens"] == 38
        assert metrics["score"] == Scores.COMPLETION

    def test_non_dict_metadata_is_wrapped(self, engine):
        event = engine.track_interaction("chat", "success", "great")
        assert event.meta == {"value": "great"}

    def test_event_buffer_is_trimmed(self, engine):
        for _ in range(501):
            engine.track_interaction("chat", "copy")
        assert len(engine.event_buffer) == 250

    def test_recent_events_are_newest_first(self, engine, clock):
        for label in ("one", "two", "three"):
            engine.track_interaction("chat", "copy", {"label": label})
            clock.advance(10)

        assert [e.label for e in engine.get_recent_events(2)] == ["three", "two"]

    def test_track_before_init_initializes(self, memory_store, recorder, clock):
        engine = PolicyEngine(memory_store, recorder, clock=clock)
        engine.track_interaction("chat", "copy")
        assert engine.is_initialized


class TestPromptAndTemperature:
    def test_prompt_carries_directives(self, engine):
        engine.add_fact("Likes jazz", scope=MemoryScope.CREATIVE)
        engine.add_fact("Lives in Oslo")
        for constraint in ("rhymes", "cliches", "slang", "emoji"):
            engine.add_negative_constraint("lyrics_ai", constraint)

        prompt = engine.get_optimized_prompt("Write a song", "lyrics_ai", MemoryScope.CREATIVE)

        assert prompt == (
            "[SYSTEM: Style: Direct and Professional. "
            "Mode: Afternoon: Focus on execution, energy, and brevity. "
            "User Context: Likes jazz. Lives in Oslo. "
            "AVOID: cliches, slang, emoji.] Write a song"
        )

    def test_scoped_facts_are_filtered(self, engine):
        engine.add_fact("Likes jazz", scope=MemoryScope.CREATIVE)
        engine.add_fact("Sells vintage cameras", scope=MemoryScope.BUSINESS)

        prompt = engine.get_optimized_prompt("Price this", "sell_it", MemoryScope.BUSINESS)

        assert "Sells vintage cameras" in prompt
        assert "Likes jazz" not in prompt

    def test_time_of_day_modes(self, engine, clock):
        clock.current = datetime(2026, 3, 10, 7, 0)
        assert engine.get_time_context().startswith("Morning")
        clock.current = datetime(2026, 3, 10, 23, 0)
        assert engine.get_time_context().startswith("Night")

    def test_base_and_late_night_temperature(self, engine, clock):
        assert engine.get_dynamic_temperature() == 0.7
        clock.current = datetime(2026, 3, 10, 22, 0)
        assert engine.get_dynamic_temperature() == 0.8

    def test_fast_regenerate_raises_temperature(self, engine, clock):
        engine.track_interaction("lyrics_ai", "generate")
        clock.advance(1000)
        engine.track_interaction("lyrics_ai", "regenerate")
        assert engine.get_dynamic_temperature() == 1.0

        clock.current = datetime(2026, 3, 10, 22, 0)
        assert engine.get_dynamic_temperature() == 1.0


class TestStateManagement:
    def test_add_fact_ignores_duplicates_and_caps(self, engine, clock):
        assert engine.add_fact("Likes jazz")
        assert not engine.add_fact("Likes jazz")

        for i in range(55):
            clock.advance(1)
            engine.add_fact(f"fact {i}", confidence=0.1 if i == 0 else 0.6)

        assert len(engine.get_memory()) == 50
        assert "fact 0" not in [f.content for f in engine.get_memory()]

    def test_forget_by_timestamp(self, engine, clock):
        engine.add_fact("Likes jazz")
        stamp = engine.get_memory()[0].timestamp
        engine.forget(stamp)
        assert engine.get_memory() == []

    def test_sync_merge_keeps_unmentioned_fields(self, engine):
        engine.state.request_count = 4
        engine.update_state_from_sync({"userArchetype": "Night Owl", "credits": {"count": 5}})

        assert engine.state.user_archetype == "Night Owl"
        assert engine.state.credits.count == 5
        assert engine.state.credits.last_reset == "2026-03-10"
        assert engine.state.request_count == 4

    def test_get_state_is_a_copy(self, engine):
        engine.add_fact("Likes jazz")
        snapshot = engine.get_state()
        snapshot.learned_facts[0].content = "changed"
        snapshot.user_archetype = "changed"

        assert engine.state.user_archetype == "General User"
        assert engine.get_memory()[0].content == "Likes jazz"

    def test_lobotomy_resets_everything(self, engine):
        engine.add_fact("Likes jazz")
        engine.track_interaction("chat", "copy")
        engine.lobotomy()

        assert engine.get_memory() == []
        assert engine.event_buffer == []
        assert engine.state.session_score == 0
        assert engine.get_credits() == 20


class TestConsolidation:
    def test_consolidation_derives_insights_not_facts(self, engine):
        for app_id in ("chat", "lyrics_ai", "sell_it"):
            engine.track_interaction(app_id, "error", {"error": "quota"})
        engine.track_interaction("chat", "copy")
        engine.track_interaction("chat", "copy")

        engine.consolidate()

        messages = [i.message for i in engine.state.insights]
        assert any("Multiple errors" in m for m in messages)
        assert any("context switching" in m for m in messages)
        assert any(i.type == InsightType.ANOMALY for i in engine.state.insights)
        assert engine.state.learned_facts == []

    def test_insights_are_not_repeated(self, engine):
        for _ in range(5):
            engine.track_interaction("chat", "copy")
        engine.consolidate()
        engine.consolidate()

        messages = [i.message for i in engine.state.insights]
        assert len(messages) == len(set(messages))

    def test_few_events_produce_nothing(self, engine):
        engine.track_interaction("chat", "copy")
        engine.consolidate()
        assert engine.state.insights == []

    @pytest.mark.asyncio
    async def test_periodic_consolidation_runs_on_timer(self, engine, scheduler):
        for _ in range(6):
            engine.track_interaction("chat", "copy")
        engine.start_consolidation()

        scheduler.fire_all()
        await scheduler.drain()

        assert engine.state.insights
        assert len(scheduler.armed()) == 1
        engine.stop()
        assert scheduler.armed() == []


class TestLowPowerAndUnload:
    def test_low_power_mode_stretches_consolidation(self, engine, scheduler, memory_store):
        engine.start_consolidation()
        assert [call.delay for call in scheduler.armed()] == [10]

        engine.set_low_power_mode(True)

        assert [call.delay for call in scheduler.armed()] == [120]
        assert json.loads(memory_store.entries[LOW_POWER_KEY]) is True

    def test_low_power_flag_is_read_on_init(self, recorder, clock):
        scheduler = FakeScheduler()
        store = MemoryDurableStore({LOW_POWER_KEY: "true"})
        engine = PolicyEngine(store, recorder, clock=clock, scheduler=scheduler)

        engine.init()
        engine.start_consolidation()

        assert engine.low_power_mode
        assert scheduler.armed()[0].delay == 120

    def test_low_power_mode_skips_per_event_saves(self, engine, memory_store):
        engine.set_low_power_mode(True)
        engine.track_interaction("chat", "copy")

        assert STATE_KEY not in memory_store.entries

        engine.consolidate()
        assert json.loads(memory_store.entries[STATE_KEY])["sessionScore"] == Scores.COPY

    def test_unload_marks_abandoned_session(self, memory_store, recorder, clock, auth):
        lifecycle = LifecycleHooks()
        engine = PolicyEngine(memory_store, recorder, clock=clock, auth=auth, lifecycle=lifecycle)
        engine.init()
        engine.track_interaction("lyrics_ai", "generate")
        clock.advance(1000)
        engine.track_interaction("lyrics_ai", "regenerate")

        lifecycle.unload()

        assert engine.get_last_session_status() == "abandoned"
        assert json.loads(memory_store.entries[SESSION_STATUS_KEY]) == "abandoned"

    def test_unload_after_a_good_session_leaves_no_marker(self, memory_store, recorder, clock, auth):
        lifecycle = LifecycleHooks()
        engine = PolicyEngine(memory_store, recorder, clock=clock, auth=auth, lifecycle=lifecycle)
        engine.init()
        engine.track_interaction("lyrics_ai", "generate")
        engine.track_interaction("lyrics_ai", "copy")

        lifecycle.unload()

        assert engine.get_last_session_status() is None

    def test_unload_long_after_generation_leaves_no_marker(self, memory_store, recorder, clock, auth):
        lifecycle = LifecycleHooks()
        engine = PolicyEngine(memory_store, recorder, clock=clock, auth=auth, lifecycle=lifecycle)
        engine.init()
        engine.track_interaction("lyrics_ai", "generate")
        engine.track_interaction("lyrics_ai", "error")
        clock.advance(11_000)

        lifecycle.unload()

        assert SESSION_STATUS_KEY not in memory_store.entries
