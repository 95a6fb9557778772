import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional


class MainDispatcher(object):
    """
    Runs callbacks one at a time on a single dedicated thread.

    Observers are never called from the network thread that finished the work
    they are told about; they all share this one ordered context instead.
    """

    log = logging.getLogger("posthog_mobile")

    def __init__(self, name="posthog-main"):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    def dispatch(self, fn: Callable[[], None]):
        try:
            return self._executor.submit(fn)
        except RuntimeError:
            self.log.debug("dispatcher is closed, dropping callback")
            return None

    def close(self):
        self._executor.shutdown(wait=True)


class Signal(object):
    """A named broadcast without payload, e.g. `feature_flags_updated`."""

    log = logging.getLogger("posthog_mobile")

    def __init__(self, name: str, dispatcher: Optional[MainDispatcher] = None):
        self.name = name
        self.dispatcher = dispatcher
        self._lock = threading.Lock()
        self._receivers: list[Callable[[], None]] = []

    def subscribe(self, receiver: Callable[[], None]) -> Callable[[], None]:
        """Register `receiver`, returns it so this can be used as a decorator."""
        with self._lock:
            if receiver not in self._receivers:
                self._receivers.append(receiver)
        return receiver

    def unsubscribe(self, receiver: Callable[[], None]) -> None:
        with self._lock:
            if receiver in self._receivers:
                self._receivers.remove(receiver)

    def publish(self) -> None:
        with self._lock:
            receivers = list(self._receivers)

        if not receivers:
            return

        if self.dispatcher is None:
            self._deliver(receivers)
        else:
            self.dispatcher.dispatch(lambda: self._deliver(receivers))

    def _deliver(self, receivers):
        for receiver in receivers:
            try:
                receiver()
            except Exception as e:
                self.log.exception(f"Error in {self.name} receiver: {e}")
