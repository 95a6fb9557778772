import logging
import threading
from typing import Iterable

from posthog_mobile.event import Event
from posthog_mobile.storage import Storage, StorageKey


class EventQueue(object):
    """
    FIFO of events waiting to be delivered, mirrored to storage.

    An event is pending until `take` hands it out for upload, in flight until
    the upload is settled, and only leaves the queue through `complete`. A
    failed upload `release`s its events back to pending for the next flush.
    """

    log = logging.getLogger("posthog_mobile")

    def __init__(self, storage: Storage, max_queue_size: int = 1000):
        self.storage = storage
        self.max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._events: list[Event] = []
        self._in_flight: set = set()
        self._restore()

    def _restore(self):
        persisted = self.storage.get(StorageKey.QUEUE) or []
        if not isinstance(persisted, list):
            self.log.warning("Ignoring persisted queue with unexpected format")
            persisted = []
        for item in persisted:
            event = Event.from_json(item)
            if event is None:
                self.log.warning("Dropping unreadable persisted event: %s", item)
                continue
            self._events.append(event)
        if self._events:
            self.log.debug("restored %d queued events", len(self._events))
        self._evict_overflow()

    def _persist(self):
        self.storage.set(StorageKey.QUEUE, [event.to_json() for event in self._events])

    def _evict_overflow(self):
        while len(self._events) > self.max_queue_size:
            dropped = self._events.pop(0)
            self._in_flight.discard(dropped.uuid)
            self.log.warning(
                "queue is full, dropping oldest event %s (%s)", dropped.name, dropped.uuid
            )

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._events) - len(self._in_flight)

    def add(self, event: Event) -> int:
        """Append `event`, return the queue depth afterwards."""
        with self._lock:
            self._events.append(event)
            self._evict_overflow()
            self._persist()
            return len(self._events)

    def take(self, limit: int) -> list[Event]:
        """Mark up to `limit` of the oldest pending events in flight and return them."""
        with self._lock:
            batch = []
            for event in self._events:
                if len(batch) >= limit:
                    break
                if event.uuid in self._in_flight:
                    continue
                batch.append(event)
            self._in_flight.update(event.uuid for event in batch)
            return batch

    def complete(self, events: Iterable[Event]) -> None:
        """Delivered, remove for good."""
        uuids = {event.uuid for event in events}
        with self._lock:
            self._events = [e for e in self._events if e.uuid not in uuids]
            self._in_flight.difference_update(uuids)
            self._persist()

    def release(self, events: Iterable[Event]) -> None:
        """Upload failed, make the events pending again."""
        with self._lock:
            self._in_flight.difference_update(event.uuid for event in events)

    def clear(self) -> None:
        with self._lock:
            self._events = []
            self._in_flight.clear()
            self.storage.remove(StorageKey.QUEUE)

    def __len__(self):
        return self.depth
