from .policy_engine import (
    LOW_POWER_KEY, PolicyEngine, SESSION_STATUS_KEY, Scores, STATE_KEY, SYSTEM_APP_ID,
)

__all__ = ["LOW_POWER_KEY", "PolicyEngine", "SESSION_STATUS_KEY", "Scores", "STATE_KEY", "SYSTEM_APP_ID"]
