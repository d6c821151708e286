"""
Write-through persistence for a single durable key.

Contract: values are eventually persisted and reads never block on writes.
`save()` serializes immediately and hands the write to a single background
writer that always lands the newest value last; `save_now()` writes
synchronously for teardown paths.
"""

from typing import Any, Optional
import asyncio
import json
import threading

import structlog

from .durable_store import DurableStore

logger = structlog.get_logger(__name__)


class WriteThroughSlot:
    """Fire-and-forget persistence of one JSON value under one key"""

    def __init__(self, store: DurableStore, key: str):
        self.store = store
        self.key = key
        self._pending: Optional[str] = None
        self._pending_seq = 0
        self._seq = 0
        self._written_seq = 0
        self._write_lock = threading.Lock()
        self._writer: Optional[asyncio.Task] = None

    def load(self) -> Optional[Any]:
        """Read and decode the stored value; malformed JSON is discarded"""

        try:
            raw = self.store.read(self.key)
        except OSError as e:
            logger.warning("Durable read failed", key=self.key, error=str(e))
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Discarding malformed durable value", key=self.key, error=str(e))
            self._delete_quietly()
            return None

    def save(self, value: Any) -> None:
        """Persist value in the background without blocking the caller"""

        payload = json.dumps(value)
        self._seq += 1
        self._pending = payload
        self._pending_seq = self._seq

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: nothing to hand off to
            self._take_and_write()
            return

        if self._writer is None or self._writer.done():
            self._writer = asyncio.ensure_future(self._drain())

    def save_now(self, value: Any) -> None:
        """Persist value synchronously"""

        payload = json.dumps(value)
        self._seq += 1
        self._pending = None
        self._write(payload, self._seq)

    def clear(self) -> None:
        self._seq += 1
        self._pending = None
        with self._write_lock:
            self._written_seq = self._seq
            self._delete_quietly()

    async def flush(self) -> None:
        """Wait until every scheduled write has landed"""

        while self._writer is not None and not self._writer.done():
            await self._writer

    async def _drain(self):
        while self._pending is not None:
            payload, seq = self._pending, self._pending_seq
            self._pending = None
            await asyncio.to_thread(self._write, payload, seq)

    def _take_and_write(self):
        if self._pending is None:
            return
        payload, seq = self._pending, self._pending_seq
        self._pending = None
        self._write(payload, seq)

    def _write(self, payload: str, seq: int):
        with self._write_lock:
            if seq <= self._written_seq:
                return
            try:
                self.store.write(self.key, payload)
                self._written_seq = seq
            except OSError as e:
                logger.warning("Durable write failed", key=self.key, error=str(e))

    def _delete_quietly(self):
        try:
            self.store.delete(self.key)
        except OSError as e:
            logger.warning("Durable delete failed", key=self.key, error=str(e))
