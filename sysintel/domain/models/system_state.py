from typing import Dict, Any, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import date
from enum import Enum
import random

DEFAULT_CREDITS = 20


class CamelModel(BaseModel):
    """Base for models stored and exchanged in camelCase"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class MemoryScope(str, Enum):
    """Which prompt-generation calls may use a learned fact"""
    GLOBAL = "Global"
    CREATIVE = "Creative"
    BUSINESS = "Business"
    UTILITY = "Utility"


class FactSource(str, Enum):
    IMPLICIT_EDIT = "implicit_edit"
    EXPLICIT_SAVE = "explicit_save"
    CLIPBOARD = "clipboard"
    DWELL = "dwell"


class InsightType(str, Enum):
    PATTERN = "pattern"
    ANOMALY = "anomaly"
    BEHAVIOR = "behavior"


class LearnedFact(CamelModel):
    """A fact about the user, appended by collaborators"""
    content: str
    scope: MemoryScope = MemoryScope.GLOBAL
    confidence: float = 0.5
    source: FactSource = FactSource.EXPLICIT_SAVE
    timestamp: int = 0


class Insight(CamelModel):
    """Behavioral observation derived from recent interaction events"""
    id: str
    type: InsightType
    message: str
    confidence: float
    timestamp: int


def _today() -> str:
    return date.today().isoformat()


class Credits(CamelModel):
    """Daily generation allotment"""
    count: int = DEFAULT_CREDITS
    last_reset: str = Field(default_factory=_today, description="ISO date of the last reset")


def _random_variant() -> str:
    return random.choice("AB")


class SystemState(CamelModel):
    """Working memory of the policy engine"""
    user_archetype: str = "General User"
    active_prompt_variant: Literal["A", "B"] = Field(default_factory=_random_variant)
    learned_facts: List[LearnedFact] = Field(default_factory=list)
    insights: List[Insight] = Field(default_factory=list)
    telemetry_enabled: bool = True
    keyword_weights: Dict[str, float] = Field(default_factory=dict)
    negative_constraints: Dict[str, List[str]] = Field(default_factory=dict)
    golden_templates: Dict[str, List[Any]] = Field(default_factory=dict)
    session_score: float = 0
    last_generation_timestamp: int = 0
    total_input_chars: int = 0
    total_output_chars: int = 0
    request_count: int = 0
    credits: Credits = Field(default_factory=Credits)

    @classmethod
    def defaults(cls, today: Optional[date] = None) -> "SystemState":
        state = cls()
        if today is not None:
            state.credits = Credits(last_reset=today.isoformat())
        return state
