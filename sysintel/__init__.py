"""Client-side intelligence substrate: telemetry, policy engine, state sync and AI proxy"""

from sysintel.config import Settings
from sysintel.application.runtime import IntelligenceRuntime

__version__ = "0.3.0"

__all__ = ["Settings", "IntelligenceRuntime", "__version__"]
