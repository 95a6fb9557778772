import logging
import threading
from threading import Thread

from posthog_mobile.event_queue import EventQueue
from posthog_mobile.request import send_batch


class Consumer(Thread):
    """Delivers the events of the client's queue in batches."""

    log = logging.getLogger("posthog_mobile")

    def __init__(
        self,
        queue: EventQueue,
        api_key,
        max_batch_size=50,
        host=None,
        on_error=None,
        flush_interval=30,
        gzip=False,
        retries=3,
        timeout=15,
    ):
        """Create a consumer thread."""
        Thread.__init__(self, name="posthog-consumer")
        # Make consumer a daemon thread so that it doesn't block program exit
        self.daemon = True
        self.max_batch_size = max_batch_size
        self.flush_interval = flush_interval
        self.api_key = api_key
        self.host = host
        self.on_error = on_error
        self.queue = queue
        self.gzip = gzip
        # It's important to set running in the constructor: if we are asked to
        # pause immediately after construction, we might set running to True in
        # run() *after* we set it to False in pause... and keep running
        # forever.
        self.running = True
        self.retries = retries
        self.timeout = timeout
        self.reachable = True

        self._wake = threading.Event()
        self._upload_lock = threading.Lock()
        self._uploading = False

    def run(self):
        """Runs the consumer."""
        self.log.debug("consumer is running...")
        while self.running:
            # wakes up on flush() or once the interval elapsed
            self._wake.wait(self.flush_interval)
            self._wake.clear()
            if self.running:
                self.drain()

        self.log.debug("consumer exited.")

    def pause(self):
        """Pause the consumer."""
        self.running = False
        self._wake.set()

    def flush(self):
        """Ask for the queue to be delivered, without waiting for it."""
        if self.is_alive():
            self._wake.set()
        else:
            self.drain()

    def set_reachable(self, reachable: bool):
        """Network reachability changed, flush when we just came back online."""
        was_reachable = self.reachable
        self.reachable = reachable
        if reachable and not was_reachable:
            self.log.debug("network is reachable again, flushing")
            self.flush()

    def drain(self):
        """Upload batches until the queue is empty or an upload fails."""
        while self.queue.pending_count > 0:
            if not self.upload():
                break

    def upload(self):
        """Upload the next batch of events, return whether successful."""
        with self._upload_lock:
            if self._uploading:
                # another upload is in progress, it will pick the events up
                return False
            self._uploading = True

        try:
            if not self.reachable:
                self.log.debug("network is not reachable, skipping upload")
                return False

            batch = self.queue.take(self.max_batch_size)
            if len(batch) == 0:
                return False

            try:
                self.request(batch)
            except Exception as e:
                self.log.error("error uploading: %s", e)
                self.queue.release(batch)
                self._on_error(e, batch)
                return False

            self.queue.complete(batch)
            self.log.debug("uploaded %d events", len(batch))
            return True
        finally:
            with self._upload_lock:
                self._uploading = False

    def _on_error(self, e, batch):
        if not self.on_error:
            return
        try:
            self.on_error(e, [event.to_json() for event in batch])
        except Exception as error:
            self.log.exception(f"Error in on_error callback: {error}")

    def request(self, batch):
        """Hand the batch to the transport, which retries before raising an error"""
        send_batch(
            self.api_key,
            [event.to_json() for event in batch],
            host=self.host,
            gzip=self.gzip,
            timeout=self.timeout,
            retries=self.retries,
        )
