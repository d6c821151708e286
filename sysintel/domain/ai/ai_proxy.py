from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union
import asyncio
import json
import structlog

from sysintel.domain.ai.ndjson import NDJSONDecoder, extract_text
from sysintel.domain.ai.retry import retry_with_backoff
from sysintel.domain.models import (
    CachedPolicy, EventType, GenerateRequest, GenerateResponse,
    MemoryScope, VideoRequest, VideoResponse,
)
from sysintel.domain.policy import PolicyEngine
from sysintel.domain.sync import PolicyCache
from sysintel.infrastructure.network import NetworkTransport
from sysintel.infrastructure.observability.logging import metrics, substrate_logger
from sysintel.infrastructure.runtime.scheduling import Clock

logger = structlog.get_logger(__name__)

GENERATE_ENDPOINT = "/api/ai/generate"
STREAM_ENDPOINT = "/api/ai/stream"
VIDEO_ENDPOINT = "/api/ai/videos"

DEFAULT_MODEL = "gemini-flash-lite-latest"
DEFAULT_VIDEO_MODEL = "veo-3.1-fast-generate-preview"

# Model registry, app id -> model
APP_MODEL_CONFIG: Dict[str, str] = {
    "captions_ai": "gemini-flash-lite-latest",
    "markup_ai": "gemini-flash-lite-latest",
    "lyrics_ai": "gemini-flash-lite-latest",
    "analytics_ai": "gemini-flash-lite-latest",
    "career_ai": "gemini-flash-lite-latest",
    "content_ai": "gemini-3-flash-preview",
    "drama": "gemini-3-flash-preview",
    "sell_it": "gemini-3-flash-preview",
    "trends_ai": "gemini-3-flash-preview",
    "wallpaper_ai": "gemini-3-pro-image-preview",
    "get_famous": "gemini-3-pro-preview",
    "priority_ai": "gemini-flash-lite-latest",
    "brand_kit_ai": "gemini-flash-lite-latest",
    "viral_plan_ai": "gemini-3-pro-preview",
    "ai_playground": "gemini-flash-lite-latest",
    "playlist_ai": "gemini-3-flash-preview",
    "achievements": "gemini-3-pro-image-preview",
    "nsfw_ai": "gemini-flash-lite-latest",
    "trap_ai": "gemini-flash-lite-latest",
    "speech_ai": "gemini-2.5-flash-preview-tts",
    "shorts_studio": "gemini-flash-lite-latest",
    "shorts_studio_image": "gemini-2.5-flash-image",
    "shorts_studio_video": "veo-3.1-fast-generate-preview",
    "achievements_edit": "gemini-2.5-flash-image",
    "chat": "gemini-3-flash-preview",
}

APP_SCOPES: Dict[MemoryScope, frozenset] = {
    MemoryScope.CREATIVE: frozenset({"lyrics_ai", "wallpaper_ai", "trap_ai", "playlist_ai"}),
    MemoryScope.BUSINESS: frozenset({"sell_it", "markup_ai", "analytics_ai", "viral_plan_ai"}),
    MemoryScope.UTILITY: frozenset({"calculator", "convert_ai"}),
}


def scope_for_app(app_id: str) -> MemoryScope:
    for scope, apps in APP_SCOPES.items():
        if app_id in apps:
            return scope
    return MemoryScope.GLOBAL


class AIProxy:
    """
    Wraps generation calls with telemetry, prompt rewriting and retry

    Every call is recorded on the policy engine: the request itself, then
    either a completion with sizes and latency or an error. The engine also
    supplies the temperature and the prompt prefix.
    """

    def __init__(
        self,
        network: NetworkTransport,
        engine: PolicyEngine,
        policy_cache: Optional[PolicyCache] = None,
        retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Clock] = None
    ):
        self.network = network
        self.engine = engine
        self.policy_cache = policy_cache
        self.retries = retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock or Clock()

    async def _policy(self) -> Optional[CachedPolicy]:
        if self.policy_cache is None:
            return None
        try:
            return await self.policy_cache.get_cached_policy()
        except Exception as e:
            logger.warning("Policy unavailable, using registry defaults", error=str(e))
            return None

    def resolve_model(self, app_id: str, policy: Optional[CachedPolicy] = None) -> str:
        if policy is not None:
            mapped = policy.mapped_model(app_id)
            if mapped:
                return mapped
        return APP_MODEL_CONFIG.get(app_id) or DEFAULT_MODEL

    def optimize_contents(self, app_id: str, contents: Any) -> Any:
        """Rewritten copy of the contents; the caller's object is left alone"""

        scope = scope_for_app(app_id)
        if isinstance(contents, str):
            return self.engine.get_optimized_prompt(contents, app_id, scope)

        if isinstance(contents, dict):
            parts = contents.get("parts")
            if isinstance(parts, list) and parts and isinstance(parts[0], dict):
                text = parts[0].get("text")
                if isinstance(text, str) and text:
                    new_parts = list(parts)
                    new_parts[0] = {**parts[0], "text": self.engine.get_optimized_prompt(text, app_id, scope)}
                    return {**contents, "parts": new_parts}
        return contents

    def _build_config(self, app_id: str, config: Optional[Dict[str, Any]], policy: Optional[CachedPolicy]):
        final_config = dict(config or {})
        if final_config.get("temperature") is None:
            final_config["temperature"] = self.engine.get_dynamic_temperature()

        if policy is not None and final_config.get("maxOutputTokens") is None:
            budget = policy.token_budget_for(app_id)
            if budget is not None:
                final_config["maxOutputTokens"] = budget
        return final_config

    async def _post_with_retry(self, app_id: str, model: str, payload: Dict[str, Any], endpoint: str):
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            return await self.network.post_json(endpoint, payload)

        def on_retry(attempt_no: int, error: BaseException, delay: float):
            substrate_logger.log_ai_request(
                app_id=app_id, model=model, attempt=attempt_no, success=False, error=str(error)
            )

        start = self.clock.monotonic()
        try:
            raw = await retry_with_backoff(
                attempt,
                retries=self.retries,
                base_delay=self.base_delay,
                sleep=self.sleep,
                on_retry=on_retry
            )
        except Exception as e:
            duration_ms = (self.clock.monotonic() - start) * 1000
            substrate_logger.log_ai_request(
                app_id=app_id, model=model, attempt=attempts,
                duration_ms=duration_ms, success=False, error=str(e)
            )
            metrics.increment_counter("ai.errors", tags={"app_id": app_id})
            raise

        duration_ms = (self.clock.monotonic() - start) * 1000
        substrate_logger.log_ai_request(
            app_id=app_id, model=model, attempt=attempts, duration_ms=duration_ms
        )
        metrics.record_latency("ai.request", duration_ms, tags={"app_id": app_id, "model": model})
        return raw, duration_ms

    async def generate_optimized_content(
        self,
        app_id: str,
        contents: Any,
        config: Optional[Dict[str, Any]] = None,
        is_regen: bool = False
    ) -> GenerateResponse:
        """Generate through the proxy with telemetry, tuning and retry"""

        self.engine.track_interaction(app_id, EventType.REGENERATE if is_regen else EventType.GENERATE)

        policy = await self._policy()
        final_contents = self.optimize_contents(app_id, contents)
        request = GenerateRequest(
            model=self.resolve_model(app_id, policy),
            contents=final_contents,
            config=self._build_config(app_id, config, policy)
        )

        try:
            raw, duration_ms = await self._post_with_retry(
                app_id, request.model, request.to_wire(), GENERATE_ENDPOINT
            )
            response = GenerateResponse.model_validate(raw if isinstance(raw, dict) else {})
        except Exception as e:
            self.engine.track_interaction(app_id, EventType.ERROR, {"error": str(e)})
            raise

        self.engine.track_interaction(app_id, EventType.COMPLETION, {
            "inputLength": len(json.dumps(final_contents, default=str)),
            "outputLength": len(response.text),
            "latency": round(duration_ms),
        })
        return response

    async def stream_ai_content(
        self,
        request: Union[GenerateRequest, Dict[str, Any]]
    ) -> AsyncIterator[str]:
        """
        Stream text fragments from the NDJSON proxy endpoint

        Each fragment is yielded as soon as its line is complete. There is
        no retry on this path.
        """

        if not isinstance(request, GenerateRequest):
            request = GenerateRequest.model_validate(request)

        decoder = NDJSONDecoder()
        async for chunk in self.network.stream_bytes(STREAM_ENDPOINT, request.to_wire()):
            for item in decoder.feed(chunk):
                text = extract_text(item)
                if text:
                    yield text

        for item in decoder.close():
            text = extract_text(item)
            if text:
                yield text

    async def generate_video(
        self,
        app_id: str,
        prompt: str,
        config: Optional[Dict[str, Any]] = None
    ) -> VideoResponse:
        self.engine.track_interaction(app_id, EventType.GENERATE, {"label": "video"})

        policy = await self._policy()
        video_key = f"{app_id}_video"
        model = (
            (policy.mapped_model(video_key) if policy is not None else None)
            or APP_MODEL_CONFIG.get(video_key)
            or DEFAULT_VIDEO_MODEL
        )
        request = VideoRequest(model=model, prompt=prompt, config=config)

        try:
            raw, duration_ms = await self._post_with_retry(app_id, model, request.to_wire(), VIDEO_ENDPOINT)
            response = VideoResponse.model_validate(raw if isinstance(raw, dict) else {})
        except Exception as e:
            self.engine.track_interaction(app_id, EventType.ERROR, {"error": str(e)})
            raise

        self.engine.track_interaction(app_id, EventType.COMPLETION, {
            "inputLength": len(prompt),
            "outputLength": 0,
            "latency": round(duration_ms),
        })
        return response
