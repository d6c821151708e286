from .transport import HttpNetworkTransport, NetworkTransport, RequestError
from .lifecycle import LifecycleHooks, OFFLINE, ONLINE, UNLOAD
from .documents import DocumentStore, HttpDocumentStore, InMemoryDocumentStore

__all__ = [
    "HttpNetworkTransport", "NetworkTransport", "RequestError",
    "LifecycleHooks", "OFFLINE", "ONLINE", "UNLOAD",
    "DocumentStore", "HttpDocumentStore", "InMemoryDocumentStore",
]
