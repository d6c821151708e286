from .durable_store import DurableStore, FileDurableStore, MemoryDurableStore
from .write_through import WriteThroughSlot

__all__ = ["DurableStore", "FileDurableStore", "MemoryDurableStore", "WriteThroughSlot"]
