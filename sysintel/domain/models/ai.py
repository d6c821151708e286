from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class GenerateRequest(BaseModel):
    """Body of /api/ai/generate and /api/ai/stream"""
    model: str
    contents: Any
    config: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class GenerateResponse(BaseModel):
    """Generation result as returned by the proxy"""
    text: str = ""
    candidates: List[Any] = Field(default_factory=list)


class VideoRequest(BaseModel):
    model: str
    prompt: str
    config: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class VideoResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    proxy_url: Optional[str] = None
