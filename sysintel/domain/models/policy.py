from typing import Dict, Any, Optional
from pydantic import ConfigDict, Field

from .system_state import CamelModel


class CachedPolicy(CamelModel):
    """Admin-controlled token budgets and feature-to-model mapping"""
    model_config = ConfigDict(protected_namespaces=())

    token_policy: Dict[str, Any] = Field(default_factory=dict)
    model_mapping: Dict[str, str] = Field(default_factory=dict)
    updated_at: Optional[Any] = None

    def mapped_model(self, app_id: str) -> Optional[str]:
        model = self.model_mapping.get(app_id)
        return model if model else None

    def token_budget_for(self, app_id: str) -> Optional[int]:
        """Max output tokens for an app, falling back to the policy default"""

        for key in (app_id, "default"):
            value = self.token_policy.get(key)
            if isinstance(value, dict):
                value = value.get("maxOutputTokens")
            if isinstance(value, bool):
                continue
            if isinstance(value, (int, float)) and value > 0:
                return int(value)
        return None
