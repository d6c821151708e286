from typing import Dict, Any, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from enum import Enum


class EventType(str, Enum):
    """Interaction event types"""
    OPEN = "open"
    GENERATE = "generate"
    REGENERATE = "regenerate"
    EDIT = "edit"
    COPY = "copy"
    DOWNLOAD = "download"
    DWELL = "dwell"
    ABANDON = "abandon"
    SUCCESS = "success"
    DISLIKE = "dislike"
    COMPLETION = "completion"
    ERROR = "error"
    SYS_EVENT = "sys_event"
    INSTALL_APP = "install_app"
    OPEN_APP = "open_app"


class EventContext(str, Enum):
    """Surface an event originated from"""
    DOM = "dom"
    AI = "ai"
    APP = "app"


AI_EVENT_TYPES = frozenset({
    EventType.GENERATE,
    EventType.REGENERATE,
    EventType.COMPLETION,
    EventType.ERROR,
})


def context_for(event_type: EventType) -> EventContext:
    if event_type == EventType.SYS_EVENT:
        return EventContext.DOM
    if event_type in AI_EVENT_TYPES:
        return EventContext.AI
    return EventContext.APP


class TelemetryEvent(BaseModel):
    """A single interaction event, immutable once created"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    app_id: str
    context: EventContext = EventContext.APP
    event_type: EventType
    label: str = ""
    timestamp: int
    meta: Optional[Dict[str, Any]] = None
    uid: Optional[str] = None
    session_id: str
    score: int = 0

    def to_wire(self) -> Dict[str, Any]:
        """Serialize in the ingest endpoint's camelCase shape"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
