from .retry import retry_with_backoff, is_retryable
from .ndjson import NDJSONDecoder, extract_text
from .ai_proxy import AIProxy, APP_MODEL_CONFIG, DEFAULT_MODEL, scope_for_app

__all__ = [
    "retry_with_backoff", "is_retryable",
    "NDJSONDecoder", "extract_text",
    "AIProxy", "APP_MODEL_CONFIG", "DEFAULT_MODEL", "scope_for_app",
]
