from typing import Optional
from pydantic import BaseModel
from enum import Enum


class DeliveryOutcome(str, Enum):
    """Result kinds of a flush attempt"""
    DELIVERED = "delivered"
    EMPTY = "empty"
    SKIPPED = "skipped"
    OFFLINE = "offline"
    NETWORK_ERROR = "network_error"
    HTTP_ERROR = "http_error"


class DeliveryResult(BaseModel):
    """Typed flush result; schedulers decide whether to surface it"""
    outcome: DeliveryOutcome
    delivered: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (DeliveryOutcome.DELIVERED, DeliveryOutcome.EMPTY)
