from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional
import json
import threading

import httpx
import structlog

logger = structlog.get_logger(__name__)


class RequestError(Exception):
    """A request that reached the server and came back with an error status"""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body


class NetworkTransport(ABC):
    """HTTP primitives the telemetry and AI services depend on"""

    @abstractmethod
    async def post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        """POST a JSON body and return the decoded JSON response (None when empty)"""
        pass

    @abstractmethod
    def stream_bytes(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[bytes]:
        """POST a JSON body and yield the response body in chunks as they arrive"""
        pass

    @abstractmethod
    def send_beacon(self, path: str, payload: Dict[str, Any]) -> bool:
        """Dispatch a one-shot best-effort POST without waiting; True when dispatched"""
        pass


class HttpNetworkTransport(NetworkTransport):
    """httpx-backed transport; beacons go out on short-lived daemon threads"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        beacon_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        beacon_transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.beacon_timeout = beacon_timeout
        self._beacon_transport = beacon_transport
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self._beacons: List[threading.Thread] = []

    async def post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        resp = await self._client.post(path, json=payload)
        if resp.status_code >= 400:
            raise RequestError(
                f"POST {path} failed with status {resp.status_code}",
                status=resp.status_code,
                body=resp.text
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except json.JSONDecodeError:
            logger.debug("Non-JSON response body", path=path)
            return None

    async def stream_bytes(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[bytes]:
        async with self._client.stream("POST", path, json=payload) as resp:
            if resp.status_code >= 400:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                raise RequestError(
                    f"POST {path} failed with status {resp.status_code}",
                    status=resp.status_code,
                    body=body
                )
            async for chunk in resp.aiter_bytes():
                yield chunk

    def send_beacon(self, path: str, payload: Dict[str, Any]) -> bool:
        body = json.dumps(payload)
        thread = threading.Thread(
            target=self._deliver_beacon,
            args=(f"{self.base_url}{path}", body),
            name="sysintel-beacon",
            daemon=True
        )
        try:
            thread.start()
        except RuntimeError as e:
            logger.warning("Beacon dispatch failed", path=path, error=str(e))
            return False

        self._beacons = [t for t in self._beacons if t.is_alive()]
        self._beacons.append(thread)
        return True

    def _deliver_beacon(self, url: str, body: str):
        try:
            with httpx.Client(timeout=self.beacon_timeout, transport=self._beacon_transport) as client:
                client.post(url, content=body, headers={"Content-Type": "application/json"})
        except httpx.HTTPError as e:
            logger.debug("Beacon delivery failed", url=url, error=str(e))

    def join_beacons(self, timeout: Optional[float] = None):
        """Give in-flight beacons a chance to finish before the process exits"""

        for thread in self._beacons:
            thread.join(timeout)
        self._beacons = [t for t in self._beacons if t.is_alive()]

    async def aclose(self):
        await self._client.aclose()
