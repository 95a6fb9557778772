import atexit
import logging
import threading
from typing import Any, Callable, Dict, Optional
from typing_extensions import Unpack
from uuid import uuid4

from posthog_mobile.args import OptionalCaptureArgs
from posthog_mobile.consumer import Consumer
from posthog_mobile.event import Event
from posthog_mobile.event_queue import EventQueue
from posthog_mobile.feature_flags import FeatureFlags
from posthog_mobile.request import determine_server_host
from posthog_mobile.signals import MainDispatcher, Signal
from posthog_mobile.storage import Storage, StorageKey
from posthog_mobile.types import FlagValue
from posthog_mobile.utils import SizeLimitedDict, sanitize, system_context
from posthog_mobile.version import VERSION

MAX_DICT_SIZE = 50_000


class Client(object):
    """
    Analytics client for a single app install.

    Events are decorated with registered properties, groups and the cached
    feature flags, then queued and delivered in batches. Identity, registered
    properties, groups, flags and the queue itself are kept in `storage`, so
    they survive restarts when a `storage_path` is given.

    Examples:
        ```python
        from posthog_mobile import Posthog
        posthog = Posthog('<ph_project_api_key>', host='<ph_client_api_host>', storage_path='/data/posthog')
        posthog.capture('app opened')
        if posthog.is_feature_enabled('new-onboarding'):
            ...
        ```
    """

    log = logging.getLogger("posthog_mobile")

    def __init__(
        self,
        project_api_key: str,
        host=None,
        debug=False,
        max_queue_size=1000,
        send=True,
        on_error=None,
        flush_at=20,
        max_batch_size=50,
        flush_interval=30,
        gzip=False,
        max_retries=3,
        sync_mode=False,
        timeout=15,
        feature_flags_request_timeout_seconds=10,
        storage_path=None,
        preload_feature_flags=True,
        send_feature_flag_event=True,
        opt_out=False,
        disabled=False,
    ):
        """
        Initialize a new client instance.

        Args:
            project_api_key: The project API key.
            host: The host to use for the client.
            debug: Whether to enable debug mode.
            flush_at: Queue depth that triggers a flush.
            max_batch_size: Maximum number of events sent in one request.
            max_queue_size: Oldest events are dropped beyond this many queued events.
            flush_interval: Seconds between timer driven flushes.
            sync_mode: Deliver every event on the calling thread as it is captured,
                instead of on the consumer thread.
            storage_path: Directory for persisted state, memory only when None.
            preload_feature_flags: Load feature flags right away.
            send_feature_flag_event: Capture `$feature_flag_called` when flags are read.
            opt_out: Start opted out of capturing.
        """
        # api_key: This should be the Team API Key (token), public
        self.api_key = project_api_key

        self.on_error = on_error
        self.debug = debug
        self.send = send
        self.sync_mode = sync_mode
        self.host = determine_server_host(host)
        self.flush_at = flush_at
        self.disabled = disabled
        self.send_feature_flag_event = send_feature_flag_event
        self.distinct_ids_feature_flags_reported = SizeLimitedDict(MAX_DICT_SIZE, set)

        if debug:
            # Ensures that debug level messages are logged when debug mode is on.
            # Otherwise, defaults to WARNING level. See https://docs.python.org/3/howto/logging.html#what-happens-if-no-configuration-is-provided
            logging.basicConfig()
            self.log.setLevel(logging.DEBUG)
        else:
            self.log.setLevel(logging.WARNING)

        self._lock = threading.RLock()
        self.storage = Storage(storage_path)
        if opt_out:
            self.storage.set_bool(StorageKey.OPT_OUT, True)

        self.dispatcher = MainDispatcher()
        self.feature_flags_updated = Signal("feature_flags_updated", self.dispatcher)
        self.feature_flags = FeatureFlags(
            self.api_key,
            self.storage,
            host=self.host,
            timeout=feature_flags_request_timeout_seconds,
            on_flags_updated=self.feature_flags_updated,
        )

        self.queue = EventQueue(self.storage, max_queue_size=max_queue_size)
        self.consumer = Consumer(
            self.queue,
            self.api_key,
            max_batch_size=max_batch_size,
            host=self.host,
            on_error=on_error,
            flush_interval=flush_interval,
            gzip=gzip,
            retries=max_retries,
            timeout=timeout,
        )

        # if we've disabled sending, or deliver synchronously, don't start the consumer
        if send and not sync_mode:
            # On program exit, allow the consumer thread to exit cleanly.
            # This prevents exceptions and a messy shutdown when the
            # interpreter is destroyed before the daemon thread finishes
            # execution. However, it is *not* the same as flushing the queue!
            # To guarantee all events have been delivered, you'll still need
            # to call shutdown().
            atexit.register(self.join)
            self.consumer.start()

        if preload_feature_flags:
            self.reload_feature_flags()

    def _is_capturing(self) -> bool:
        if self.disabled:
            return False
        if self.is_opt_out():
            self.log.debug("Opted out, event not captured")
            return False
        return True

    # Identity

    def get_anonymous_id(self) -> str:
        """
        The id of this install before anyone identified, generated on first use.

        Category:
            Identification
        """
        with self._lock:
            anonymous_id = self.storage.get_string(StorageKey.ANONYMOUS_ID)
            if not anonymous_id:
                anonymous_id = str(uuid4())
                self.storage.set_string(StorageKey.ANONYMOUS_ID, anonymous_id)
            return anonymous_id

    def get_distinct_id(self) -> str:
        """
        The id events are attributed to, the anonymous id until `identify` is called.

        Category:
            Identification
        """
        with self._lock:
            return (
                self.storage.get_string(StorageKey.DISTINCT_ID)
                or self.get_anonymous_id()
            )

    def get_groups(self) -> dict[str, str]:
        return self.storage.get_dictionary(StorageKey.GROUPS) or {}

    def get_registered_properties(self) -> dict[str, Any]:
        return self.storage.get_dictionary(StorageKey.REGISTERED_PROPERTIES) or {}

    # Capture pipeline

    def _build_properties(
        self,
        properties=None,
        user_properties=None,
        user_properties_set_once=None,
        groups=None,
        append_feature_flags=False,
    ) -> dict[str, Any]:
        props = {
            **system_context(),
            **self.get_registered_properties(),
            **sanitize(properties),
        }

        user_properties = sanitize(user_properties)
        if user_properties:
            props["$set"] = user_properties

        user_properties_set_once = sanitize(user_properties_set_once)
        if user_properties_set_once:
            props["$set_once"] = user_properties_set_once

        all_groups = {**self.get_groups(), **sanitize(groups)}
        if all_groups:
            props["$groups"] = all_groups

        if append_feature_flags:
            props.update(self._feature_flag_properties())

        return props

    def _feature_flag_properties(self) -> dict[str, Any]:
        flags = self.feature_flags.get_feature_flags() or {}
        extra_properties: dict[str, Any] = {}

        active_feature_flags = []
        for key, value in flags.items():
            extra_properties[f"$feature/{key}"] = value
            if value is not None and value is not False:
                active_feature_flags.append(key)

        if active_feature_flags:
            extra_properties["$active_feature_flags"] = active_feature_flags

        return extra_properties

    def capture(
        self, event: str, **kwargs: Unpack[OptionalCaptureArgs]
    ) -> Optional[Event]:
        """
        Captures an event for the current user.

        Args:
            event: The event name to capture.
            properties: A dictionary of properties to include with the event.
            user_properties: Properties to `$set` on the person.
            user_properties_set_once: Properties to `$set_once` on the person.
            groups: A dictionary of group information.
            timestamp: The timestamp of the event.
            uuid: A unique identifier for the event.

        Examples:
            ```python
            posthog.capture(
                'purchase',
                properties={'amount': 9.99},
                user_properties={'plan': 'pro'},
            )
            ```

        Category:
            Capture
        """
        if not self._is_capturing():
            return None

        properties = self._build_properties(
            kwargs.get("properties", None),
            kwargs.get("user_properties", None),
            kwargs.get("user_properties_set_once", None),
            kwargs.get("groups", None),
            append_feature_flags=event != "$feature_flag_called",
        )

        return self._enqueue(
            event,
            self.get_distinct_id(),
            properties,
            timestamp=kwargs.get("timestamp", None),
            uuid=kwargs.get("uuid", None),
        )

    def identify(
        self,
        distinct_id: str,
        user_properties: Optional[Dict[str, Any]] = None,
        user_properties_set_once: Optional[Dict[str, Any]] = None,
    ) -> Optional[Event]:
        """
        Identify the current user.

        The previous distinct id becomes the anonymous id, and feature flags are
        reloaded when the distinct id changed.

        Examples:
            ```python
            posthog.identify('user-123', user_properties={'email': 'max@hedgehog.com'})
            ```

        Category:
            Identification
        """
        if not self._is_capturing():
            return None

        if not distinct_id:
            self.log.warning("identify called with an empty distinct_id")
            return None

        with self._lock:
            old_distinct_id = self.get_distinct_id()
            properties = self._build_properties(
                {
                    "distinct_id": distinct_id,
                    "$anon_distinct_id": self.get_anonymous_id(),
                },
                user_properties,
                user_properties_set_once,
            )
            event = self._enqueue("$identify", distinct_id, properties)

            changed = distinct_id != old_distinct_id
            if changed:
                self.storage.set_string(StorageKey.ANONYMOUS_ID, old_distinct_id)
                self.storage.set_string(StorageKey.DISTINCT_ID, distinct_id)

        if changed:
            self.reload_feature_flags()

        return event

    def alias(self, alias: str) -> Optional[Event]:
        """
        Create an alias for the current user.

        Examples:
            ```python
            posthog.alias('other-id')
            ```

        Category:
            Identification
        """
        if not self._is_capturing():
            return None

        properties = self._build_properties({"alias": alias})
        return self._enqueue("$create_alias", self.get_distinct_id(), properties)

    def screen(
        self, screen_title: str, properties: Optional[Dict[str, Any]] = None
    ) -> Optional[Event]:
        """
        Capture a screen view.

        Category:
            Capture
        """
        if not self._is_capturing():
            return None

        properties = self._build_properties(
            {**(properties or {}), "$screen_name": screen_title},
            append_feature_flags=True,
        )
        return self._enqueue("$screen", self.get_distinct_id(), properties)

    def group(
        self,
        group_type: str,
        group_key: str,
        group_properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[Event]:
        """
        Associate the current user with a group, and optionally set the group's properties.

        The group is added to every following event's `$groups`. Feature flags are
        reloaded when the key for this group type changed.

        Examples:
            ```python
            posthog.group('company', 'company_id_in_your_db', {
                'name': 'Awesome Inc.',
                'employees': 11
            })
            ```

        Category:
            Identification
        """
        if not self._is_capturing():
            return None

        with self._lock:
            groups = self.get_groups()
            changed = groups.get(group_type) != group_key
            if changed:
                groups[group_type] = group_key
                self.storage.set_dictionary(StorageKey.GROUPS, groups)

        properties = {"$group_type": group_type, "$group_key": group_key}
        group_properties = sanitize(group_properties)
        if group_properties:
            properties["$group_set"] = group_properties

        event = self._enqueue(
            "$groupidentify", self.get_distinct_id(), self._build_properties(properties)
        )

        if changed:
            self.reload_feature_flags()

        return event

    def register(self, properties: Dict[str, Any]) -> None:
        """
        Register properties sent with every following event.

        Category:
            Capture
        """
        with self._lock:
            registered = self.get_registered_properties()
            registered.update(sanitize(properties))
            self.storage.set_dictionary(StorageKey.REGISTERED_PROPERTIES, registered)

    def unregister(self, key: str) -> None:
        with self._lock:
            registered = self.get_registered_properties()
            if key in registered:
                del registered[key]
                self.storage.set_dictionary(
                    StorageKey.REGISTERED_PROPERTIES, registered
                )

    def reset(self) -> None:
        """
        Forget the current user: identity, registered properties, groups, feature
        flags and any events not delivered yet. The opt out choice is kept.

        Category:
            Identification
        """
        with self._lock:
            opted_out = self.is_opt_out()
            self.queue.clear()
            self.feature_flags.clear()
            self.storage.reset()
            if opted_out:
                self.storage.set_bool(StorageKey.OPT_OUT, True)
            self.distinct_ids_feature_flags_reported.clear()

    def opt_out(self) -> None:
        self.storage.set_bool(StorageKey.OPT_OUT, True)

    def opt_in(self) -> None:
        self.storage.set_bool(StorageKey.OPT_OUT, False)

    def is_opt_out(self) -> bool:
        return self.storage.get_bool(StorageKey.OPT_OUT) is True

    def _enqueue(
        self, event_name, distinct_id, properties, timestamp=None, uuid=None
    ) -> Optional[Event]:
        properties["$lib"] = "posthog-mobile-python"
        properties["$lib_version"] = VERSION

        try:
            event = Event(
                event_name,
                distinct_id,
                properties,
                timestamp=timestamp,
                uuid=uuid,
            )
        except ValueError as e:
            self.log.warning("Invalid event %r not captured: %s", event_name, e)
            return None

        self.log.debug("queueing: %s", event)

        # if send is False, return the event as if it was successfully queued
        if not self.send:
            return event

        depth = self.queue.add(event)
        self.log.debug("enqueued %s.", event.name)

        if self.sync_mode:
            # deliver on the calling thread, whatever the queue depth
            self.consumer.drain()
        elif depth >= self.flush_at:
            self.consumer.flush()

        return event

    # Feature flags

    def reload_feature_flags(self, callback: Optional[Callable[[], None]] = None):
        """
        Fetch the feature flags for the current user in the background.

        Returns False when a load is already in progress, `callback` is then not
        called.

        Examples:
            ```python
            posthog.reload_feature_flags(lambda: print(posthog.get_feature_flags()))
            ```

        Category:
            Feature Flags
        """
        if self.disabled:
            return False

        return self.feature_flags.load_feature_flags(
            self.get_distinct_id(),
            self.get_anonymous_id(),
            self.get_groups(),
            callback,
        )

    def get_feature_flags(self) -> Optional[dict[str, FlagValue]]:
        return self.feature_flags.get_feature_flags()

    def is_feature_enabled(self, key: str) -> bool:
        """
        Whether the flag is enabled for the current user, from the cached flags.

        Variants count as enabled.

        Examples:
            ```python
            if posthog.is_feature_enabled('flag-key'):
                # Do something differently for this user
                payload = posthog.get_feature_flag_payload('flag-key')
            ```

        Category:
            Feature Flags
        """
        enabled = self.feature_flags.is_feature_enabled(key)
        if self.send_feature_flag_event:
            self._capture_feature_flag_called(
                key, self.feature_flags.get_feature_flag(key)
            )
        return enabled

    def get_feature_flag(self, key: str) -> Optional[FlagValue]:
        """
        The cached value of a flag: a boolean, a variant name, or None when unknown.

        Category:
            Feature Flags
        """
        value = self.feature_flags.get_feature_flag(key)
        if self.send_feature_flag_event:
            self._capture_feature_flag_called(key, value)
        return value

    def get_feature_flag_payload(self, key: str) -> Any:
        """
        The decoded payload of a flag, or the raw string when it isn't valid JSON.

        Category:
            Feature Flags
        """
        return self.feature_flags.get_feature_flag_payload(key)

    def _capture_feature_flag_called(self, key: str, response: Optional[FlagValue]):
        feature_flag_reported_key = (
            f"{key}_{'::null::' if response is None else str(response)}"
        )

        # check and record together, concurrent reads must report once
        with self._lock:
            distinct_id = self.get_distinct_id()
            if (
                feature_flag_reported_key
                in self.distinct_ids_feature_flags_reported[distinct_id]
            ):
                return

            properties: dict[str, Any] = {
                "$feature_flag": key,
                "$feature_flag_response": response,
                f"$feature/{key}": response,
            }

            if self.capture("$feature_flag_called", properties=properties) is not None:
                self.distinct_ids_feature_flags_reported[distinct_id].add(
                    feature_flag_reported_key
                )

    # Delivery

    def set_reachable(self, reachable: bool) -> None:
        """Tell the client whether the network is reachable. Coming back online triggers a flush."""
        self.consumer.set_reachable(reachable)

    def flush(self):
        """
        Ask for the queued events to be delivered now. Use `shutdown()` to wait for delivery.

        Examples:
            ```python
            posthog.capture('event_name')
            posthog.flush()
            ```
        """
        self.consumer.flush()

    def join(self):
        """
        End the consumer thread. Do not use directly, call `shutdown()` instead.
        """
        self.consumer.pause()
        try:
            self.consumer.join()
        except RuntimeError:
            # consumer thread has not started
            pass

    def shutdown(self):
        """
        Stop the background work and try to deliver what is left in the queue.
        Events that still can't be delivered stay in storage for the next start.

        Examples:
            ```python
            posthog.shutdown()
            ```
        """
        self.join()
        if self.send:
            self.consumer.drain()
        self.dispatcher.close()
        # Note that this message may not be precise, because of threading.
        self.log.debug("shutdown with %s events left in the queue.", self.queue.depth)
