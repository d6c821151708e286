from typing import Any, Callable, Dict, List
import atexit

import structlog

logger = structlog.get_logger(__name__)

ONLINE = "online"
OFFLINE = "offline"
UNLOAD = "unload"


class LifecycleHooks:
    """Connectivity indicator plus online/offline/unload notifications"""

    def __init__(self, online: bool = True):
        self._online = online
        self.event_handlers: Dict[str, List[Callable[[], Any]]] = {}
        self._exit_hook_installed = False
        self._unloaded = False

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, event_type: str, handler: Callable[[], Any]) -> Callable[[], None]:
        """Register a handler, returning a function that removes it"""

        self.event_handlers.setdefault(event_type, []).append(handler)

        def unsubscribe():
            handlers = self.event_handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event_type: str):
        """Invoke handlers synchronously; one failing handler does not stop the rest"""

        for handler in list(self.event_handlers.get(event_type, [])):
            try:
                handler()
            except Exception as e:
                logger.error("Error in lifecycle handler", event_type=event_type, error=str(e))

    def set_online(self, online: bool):
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed", online=online)
        self.emit(ONLINE if online else OFFLINE)

    def unload(self):
        """Signal teardown once"""

        if self._unloaded:
            return
        self._unloaded = True
        self.emit(UNLOAD)

    def install_exit_hook(self):
        """Treat interpreter exit as an unload"""

        if self._exit_hook_installed:
            return
        atexit.register(self.unload)
        self._exit_hook_installed = True
