from unittest.mock import AsyncMock
import json

import pytest

from sysintel.domain.sync import (
    LOCAL_STATE_KEY, POLICY_CACHE_KEY, POLICY_DOCUMENT, PolicyCache, StateSyncCache,
    state_document_path,
)
from sysintel.infrastructure.network import InMemoryDocumentStore, RequestError
from sysintel.infrastructure.security.auth import AuthSession

STATE_DOC = {
    "userArchetype": "Night Owl",
    "learnedFacts": {"0": {"content": "Likes jazz"}},
    "credits": {"count": 12, "lastReset": "2026-03-10"},
}


@pytest.fixture
def documents():
    return InMemoryDocumentStore({state_document_path("user-1"): STATE_DOC})


@pytest.fixture
def sync_cache(documents, local_store, auth, scheduler, clock):
    return StateSyncCache(documents, local_store, auth, scheduler, clock=clock)


class TestStateSyncCache:
    @pytest.mark.asyncio
    async def test_init_refreshes_once_and_arms_timer(self, sync_cache, scheduler, local_store):
        await sync_cache.init()
        await sync_cache.init()

        state = sync_cache.get_state()
        assert state.user_archetype == "Night Owl"
        assert [f.content for f in state.learned_facts] == ["Likes jazz"]
        assert len(scheduler.armed()) == 1
        assert scheduler.armed()[0].delay == 60

        await sync_cache.wait_persisted()
        assert json.loads(local_store.entries[LOCAL_STATE_KEY])["userArchetype"] == "Night Owl"

    @pytest.mark.asyncio
    async def test_cached_copy_loaded_before_refresh(self, local_store, auth, scheduler, clock):
        local_store.write(LOCAL_STATE_KEY, json.dumps({"userArchetype": "Cached"}))
        documents = InMemoryDocumentStore()
        cache = StateSyncCache(documents, local_store, auth, scheduler, clock=clock)

        await cache.init()

        assert cache.get_state().user_archetype == "Cached"

    @pytest.mark.asyncio
    async def test_refresh_failure_leaves_cache_alone(self, sync_cache, documents):
        await sync_cache.init()
        documents.get_document = AsyncMock(side_effect=RequestError("down", status=503))

        assert await sync_cache.refresh() is False
        assert sync_cache.get_state().user_archetype == "Night Owl"

    @pytest.mark.asyncio
    async def test_initial_failure_is_logged_not_raised(self, local_store, auth, scheduler, clock):
        documents = InMemoryDocumentStore()
        documents.get_document = AsyncMock(side_effect=RuntimeError("offline"))
        cache = StateSyncCache(documents, local_store, auth, scheduler, clock=clock)

        await cache.init()

        assert cache.get_state() is None
        assert len(scheduler.armed()) == 1

    @pytest.mark.asyncio
    async def test_no_identity_means_no_fetch(self, documents, local_store, scheduler, clock):
        cache = StateSyncCache(documents, local_store, AuthSession(), scheduler, clock=clock)
        assert await cache.refresh() is False
        assert cache.get_state() is None

    @pytest.mark.asyncio
    async def test_returned_state_is_a_deep_copy(self, sync_cache):
        await sync_cache.init()

        first = sync_cache.get_state()
        first.learned_facts[0].content = "mutated"
        first.user_archetype = "mutated"

        second = sync_cache.get_state()
        assert second.user_archetype == "Night Owl"
        assert second.learned_facts[0].content == "Likes jazz"

    @pytest.mark.asyncio
    async def test_listeners_receive_each_refresh(self, sync_cache, documents, scheduler):
        received = []
        sync_cache.subscribe(received.append)
        await sync_cache.init()

        documents.put_document(state_document_path("user-1"), {"userArchetype": "Early Bird"})
        scheduler.fire_all()
        await scheduler.drain()

        assert [s["userArchetype"] for s in received] == ["Night Owl", "Early Bird"]
        sync_cache.stop()
        assert scheduler.armed() == []

    @pytest.mark.asyncio
    async def test_refresh_keeps_local_fields_the_document_omits(
        self, engine, documents, local_store, auth, scheduler, clock
    ):
        engine.init()
        assert engine.use_credit(15)
        engine.toggle_telemetry(False)
        engine.track_interaction("chat", "completion", {"inputLength": 100, "outputLength": 40})
        variant = engine.state.active_prompt_variant

        documents.put_document(state_document_path("user-1"), {"userArchetype": "Night Owl"})
        cache = StateSyncCache(documents, local_store, auth, scheduler, clock=clock)
        cache.subscribe(engine.update_state_from_sync)

        assert await cache.refresh()

        assert engine.state.user_archetype == "Night Owl"
        assert engine.get_credits() == 5
        assert engine.state.telemetry_enabled is False
        assert engine.state.request_count == 1
        assert engine.state.total_input_chars == 100
        assert engine.state.active_prompt_variant == variant
        assert cache.get_state().credits.count == 20


POLICY_DOC = {"tokenPolicy": {"default": 800}, "modelMapping": {"chat": "gemini-3-pro-preview"}}


@pytest.fixture
def policy_documents():
    return InMemoryDocumentStore({POLICY_DOCUMENT: POLICY_DOC})


class TestPolicyCache:
    @pytest.mark.asyncio
    async def test_fresh_copy_is_served_without_refetch(self, policy_documents, local_store, clock):
        policy_documents.get_document = AsyncMock(wraps=policy_documents.get_document)
        cache = PolicyCache(policy_documents, local_store, clock=clock)

        first = await cache.get_cached_policy()
        clock.advance(30_000)
        second = await cache.get_cached_policy()

        assert first.token_budget_for("chat") == 800
        assert second == first
        assert policy_documents.get_document.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_copy_is_refetched(self, policy_documents, local_store, clock):
        cache = PolicyCache(policy_documents, local_store, clock=clock)
        await cache.get_cached_policy()

        policy_documents.put_document(POLICY_DOCUMENT, {"tokenPolicy": {"default": 100}})
        clock.advance(61_000)

        assert (await cache.get_cached_policy()).token_budget_for("chat") == 100

    @pytest.mark.asyncio
    async def test_durable_copy_survives_restart(self, policy_documents, local_store, clock):
        first = PolicyCache(policy_documents, local_store, clock=clock)
        await first.get_cached_policy()
        await first.wait_persisted()
        stored = json.loads(local_store.entries[POLICY_CACHE_KEY])
        assert stored["fetchedAt"] == clock.epoch_ms()

        offline = InMemoryDocumentStore()
        offline.get_document = AsyncMock(side_effect=AssertionError("should not fetch"))
        restarted = PolicyCache(offline, local_store, clock=clock)

        policy = await restarted.get_cached_policy()
        assert policy.mapped_model("chat") == "gemini-3-pro-preview"

    @pytest.mark.asyncio
    async def test_stale_copy_served_when_fetch_fails(self, policy_documents, local_store, clock):
        cache = PolicyCache(policy_documents, local_store, clock=clock)
        await cache.get_cached_policy()

        policy_documents.get_document = AsyncMock(side_effect=RequestError("down", status=500))
        clock.advance(10 * 60_000)

        policy = await cache.get_cached_policy()
        assert policy.token_budget_for("chat") == 800

    @pytest.mark.asyncio
    async def test_missing_document(self, local_store, clock):
        cache = PolicyCache(InMemoryDocumentStore(), local_store, clock=clock)
        assert await cache.get_cached_policy() is None

    @pytest.mark.asyncio
    async def test_malformed_durable_blob_is_discarded(self, policy_documents, local_store, clock):
        local_store.write(POLICY_CACHE_KEY, json.dumps({"policy": "oops", "fetchedAt": "yesterday"}))
        cache = PolicyCache(policy_documents, local_store, clock=clock)

        policy = await cache.get_cached_policy()
        await cache.wait_persisted()

        assert policy.token_budget_for("x") == 800
        assert json.loads(local_store.entries[POLICY_CACHE_KEY])["policy"]["tokenPolicy"] == {"default": 800}

    @pytest.mark.asyncio
    async def test_returned_policy_is_a_copy(self, policy_documents, local_store, clock):
        cache = PolicyCache(policy_documents, local_store, clock=clock)
        policy = await cache.get_cached_policy()
        policy.model_mapping["chat"] = "changed"

        assert (await cache.get_cached_policy()).mapped_model("chat") == "gemini-3-pro-preview"
