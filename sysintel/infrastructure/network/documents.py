from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import copy

import httpx
import structlog

from .transport import RequestError

logger = structlog.get_logger(__name__)


class DocumentStore(ABC):
    """Read access to the remote document store"""

    @abstractmethod
    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        """Return the document data, or None when it does not exist"""
        pass


class InMemoryDocumentStore(DocumentStore):
    """Document store backed by a dict keyed by path"""

    def __init__(self, documents: Optional[Dict[str, Dict[str, Any]]] = None):
        self.documents: Dict[str, Dict[str, Any]] = dict(documents or {})

    def put_document(self, path: str, data: Dict[str, Any]):
        self.documents[path] = copy.deepcopy(data)

    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        data = self.documents.get(path)
        return copy.deepcopy(data) if data is not None else None


class HttpDocumentStore(DocumentStore):
    """Documents served as JSON at GET {base_url}/documents/{path}"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def get_document(self, path: str) -> Optional[Dict[str, Any]]:
        resp = await self._client.get(f"/documents/{path.strip('/')}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise RequestError(
                f"Document read failed with status {resp.status_code}",
                status=resp.status_code,
                body=resp.text
            )
        data = resp.json()
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object document", path=path)
            return None
        return data

    async def aclose(self):
        await self._client.aclose()
