import json
import logging
import threading
from typing import Any, Callable, Optional

from posthog_mobile.request import decide
from posthog_mobile.signals import Signal
from posthog_mobile.storage import Storage, StorageKey
from posthog_mobile.types import DecideResponse, FlagValue


class FeatureFlags(object):
    """
    Cache of the flags the server computed for the current user.

    Fetches go through `decide` on a background thread and at most one is in
    flight at a time. Reads only ever touch the cached copy in storage, so they
    never wait on the network.
    """

    log = logging.getLogger("posthog_mobile")

    def __init__(
        self,
        api_key: str,
        storage: Storage,
        host: Optional[str] = None,
        timeout: int = 10,
        on_flags_updated: Optional[Signal] = None,
    ):
        self.api_key = api_key
        self.host = host
        self.timeout = timeout
        self.storage = storage
        self.on_flags_updated = on_flags_updated or Signal("feature_flags_updated")

        # Never held together: a fetch in progress must not block flag reads.
        self._loading_lock = threading.Lock()
        self._flags_lock = threading.Lock()
        self._loading = False

    @property
    def loading(self) -> bool:
        with self._loading_lock:
            return self._loading

    def load_feature_flags(
        self,
        distinct_id: str,
        anonymous_id: str,
        groups: Optional[dict[str, str]] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Refresh the cached flags from the decide endpoint.

        Returns immediately. False means a load was already in flight and this
        call was dropped, `on_complete` won't be called for it.
        """
        with self._loading_lock:
            if self._loading:
                self.log.debug("[FEATURE FLAGS] Already loading feature flags")
                return False
            self._loading = True

        thread = threading.Thread(
            target=self._fetch,
            args=(distinct_id, anonymous_id, dict(groups or {}), on_complete),
            name="posthog-feature-flags",
            daemon=True,
        )
        thread.start()
        return True

    def _fetch(self, distinct_id, anonymous_id, groups, on_complete):
        try:
            try:
                response = decide(
                    self.api_key,
                    self.host,
                    timeout=self.timeout,
                    **{
                        "distinct_id": distinct_id,
                        "$anon_distinct_id": anonymous_id,
                        "$groups": groups,
                    },
                )
            except Exception as e:
                self.log.error(f"[FEATURE FLAGS] Error loading feature flags: {e}")
            else:
                self._process_response(response)
        finally:
            self._notify_and_release()

        if on_complete:
            try:
                on_complete()
            except Exception as e:
                self.log.exception(f"[FEATURE FLAGS] Error in on_complete: {e}")

    def _process_response(self, response: DecideResponse) -> None:
        if not isinstance(response, dict):
            response = {}
        flags = response.get("featureFlags")
        payloads = response.get("featureFlagPayloads")

        if not isinstance(flags, dict) or not isinstance(payloads, dict):
            self.log.error(
                "[FEATURE FLAGS] Decide response missing correct featureFlags format"
            )
            return

        errors_while_computing_flags = (
            response.get("errorsWhileComputingFlags") is True
        )

        with self._flags_lock:
            if errors_while_computing_flags:
                # not all flags were computed, upsert instead of replacing
                cached_flags = (
                    self.storage.get_dictionary(StorageKey.ENABLED_FEATURE_FLAGS) or {}
                )
                cached_payloads = (
                    self.storage.get_dictionary(
                        StorageKey.ENABLED_FEATURE_FLAG_PAYLOADS
                    )
                    or {}
                )
                flags = {**cached_flags, **flags}
                payloads = {**cached_payloads, **payloads}

            self.storage.set_dictionary(StorageKey.ENABLED_FEATURE_FLAGS, flags)
            self.storage.set_dictionary(
                StorageKey.ENABLED_FEATURE_FLAG_PAYLOADS, payloads
            )

        self.log.debug("[FEATURE FLAGS] Loaded %d feature flags", len(flags))

    def _notify_and_release(self) -> None:
        with self._loading_lock:
            self._loading = False
        self.on_flags_updated.publish()

    def get_feature_flags(self) -> Optional[dict[str, FlagValue]]:
        with self._flags_lock:
            return self.storage.get_dictionary(StorageKey.ENABLED_FEATURE_FLAGS)

    def get_feature_flag_payloads(self) -> Optional[dict[str, Any]]:
        with self._flags_lock:
            return self.storage.get_dictionary(
                StorageKey.ENABLED_FEATURE_FLAG_PAYLOADS
            )

    def is_feature_enabled(self, key: str) -> bool:
        value = self.get_feature_flag(key)
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        # a variant counts as enabled
        return True

    def get_feature_flag(self, key: str) -> Optional[FlagValue]:
        flags = self.get_feature_flags() or {}
        return flags.get(key)

    def get_feature_flag_payload(self, key: str) -> Any:
        payloads = self.get_feature_flag_payloads() or {}
        value = payloads.get(key)

        if not isinstance(value, str):
            return value

        # payloads are stored JSON-encoded, decode them the way JSON.parse would
        try:
            return json.loads(value)
        except ValueError as e:
            self.log.error(
                "[FEATURE FLAGS] Error parsing payload for %s (%r): %s", key, value, e
            )

        return value

    def clear(self) -> None:
        with self._flags_lock:
            self.storage.remove(StorageKey.ENABLED_FEATURE_FLAGS)
            self.storage.remove(StorageKey.ENABLED_FEATURE_FLAG_PAYLOADS)
