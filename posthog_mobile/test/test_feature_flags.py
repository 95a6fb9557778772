import threading
import unittest

import mock
from parameterized import parameterized

from posthog_mobile.feature_flags import FeatureFlags
from posthog_mobile.request import APIError
from posthog_mobile.signals import Signal
from posthog_mobile.storage import Storage, StorageKey
from posthog_mobile.test.test_utils import FAKE_TEST_API_KEY


def _decide_response(flags, payloads=None, errors=False):
    return {
        "featureFlags": flags,
        "featureFlagPayloads": payloads or {},
        "errorsWhileComputingFlags": errors,
    }


class TestFeatureFlags(unittest.TestCase):
    def setUp(self):
        self.storage = Storage()
        self.signal = Signal("feature_flags_updated")
        self.feature_flags = FeatureFlags(
            FAKE_TEST_API_KEY, self.storage, on_flags_updated=self.signal
        )

    def load(self, distinct_id="distinct_id", anonymous_id="anon_id", groups=None):
        """Load flags and wait for the background fetch to finish."""
        done = threading.Event()
        started = self.feature_flags.load_feature_flags(
            distinct_id, anonymous_id, groups or {}, done.set
        )
        self.assertTrue(started)
        self.assertTrue(done.wait(5), "feature flags did not load")

    def cache(self, flags, payloads=None):
        self.storage.set_dictionary(StorageKey.ENABLED_FEATURE_FLAGS, flags)
        self.storage.set_dictionary(
            StorageKey.ENABLED_FEATURE_FLAG_PAYLOADS, payloads or {}
        )

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_load_sends_identity_and_groups(self, patch_decide):
        patch_decide.return_value = _decide_response({"beta": True})

        self.load("user-1", "anon-1", {"company": "id:5"})

        patch_decide.assert_called_once()
        kwargs = patch_decide.call_args[1]
        self.assertEqual(kwargs["distinct_id"], "user-1")
        self.assertEqual(kwargs["$anon_distinct_id"], "anon-1")
        self.assertEqual(kwargs["$groups"], {"company": "id:5"})
        self.assertEqual(self.feature_flags.get_feature_flags(), {"beta": True})

    def test_get_feature_flags_before_loading(self):
        self.assertIsNone(self.feature_flags.get_feature_flags())
        self.assertFalse(self.feature_flags.is_feature_enabled("beta"))
        self.assertIsNone(self.feature_flags.get_feature_flag("beta"))
        self.assertIsNone(self.feature_flags.get_feature_flag_payload("beta"))

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_single_flight(self, patch_decide):
        release = threading.Event()
        in_decide = threading.Event()

        def slow_decide(*args, **kwargs):
            in_decide.set()
            release.wait(5)
            return _decide_response({"beta": True})

        patch_decide.side_effect = slow_decide
        first_done = threading.Event()
        second_callback = mock.Mock()

        self.assertTrue(
            self.feature_flags.load_feature_flags("d", "a", {}, first_done.set)
        )
        self.assertTrue(in_decide.wait(5))
        self.assertTrue(self.feature_flags.loading)
        self.assertFalse(
            self.feature_flags.load_feature_flags("d", "a", {}, second_callback)
        )

        release.set()
        self.assertTrue(first_done.wait(5))

        self.assertEqual(patch_decide.call_count, 1)
        second_callback.assert_not_called()
        self.assertFalse(self.feature_flags.loading)

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_can_load_again_after_completion(self, patch_decide):
        patch_decide.return_value = _decide_response({"beta": True})

        self.load()
        self.load()

        self.assertEqual(patch_decide.call_count, 2)

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_merge_when_errors_while_computing_flags(self, patch_decide):
        self.cache({"a": True}, {"a": '{"x": 1}'})
        patch_decide.return_value = _decide_response(
            {"b": False}, {"b": "[1]"}, errors=True
        )

        self.load()

        self.assertEqual(self.feature_flags.get_feature_flags(), {"a": True, "b": False})
        self.assertEqual(
            self.storage.get_dictionary(StorageKey.ENABLED_FEATURE_FLAG_PAYLOADS),
            {"a": '{"x": 1}', "b": "[1]"},
        )

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_merge_new_values_win(self, patch_decide):
        self.cache({"a": True, "b": "control"})
        patch_decide.return_value = _decide_response({"b": "test"}, errors=True)

        self.load()

        self.assertEqual(
            self.feature_flags.get_feature_flags(), {"a": True, "b": "test"}
        )

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_replace_when_all_flags_computed(self, patch_decide):
        self.cache({"a": True}, {"a": '{"x": 1}'})
        patch_decide.return_value = _decide_response({"b": False}, errors=False)

        self.load()

        self.assertEqual(self.feature_flags.get_feature_flags(), {"b": False})
        self.assertEqual(
            self.storage.get_dictionary(StorageKey.ENABLED_FEATURE_FLAG_PAYLOADS), {}
        )

    @parameterized.expand(
        [
            ("missing flags", {"featureFlagPayloads": {}}),
            ("missing payloads", {"featureFlags": {"b": True}}),
            ("flags not a dict", {"featureFlags": [], "featureFlagPayloads": {}}),
            ("not a dict", ["featureFlags"]),
            ("none", None),
        ]
    )
    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_malformed_response_keeps_cache(self, _name, response, patch_decide):
        self.cache({"a": True})
        patch_decide.return_value = response

        with self.assertLogs("posthog_mobile", level="ERROR"):
            self.load()

        self.assertEqual(self.feature_flags.get_feature_flags(), {"a": True})
        self.assertFalse(self.feature_flags.loading)

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_request_error_keeps_cache(self, patch_decide):
        self.cache({"a": True})
        patch_decide.side_effect = APIError(500, "Internal Server Error")

        with self.assertLogs("posthog_mobile", level="ERROR"):
            self.load()

        self.assertEqual(self.feature_flags.get_feature_flags(), {"a": True})
        self.assertFalse(self.feature_flags.loading)

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_publishes_update_before_completion(self, patch_decide):
        patch_decide.return_value = _decide_response({"beta": True})
        order = []
        self.signal.subscribe(lambda: order.append("signal"))

        done = threading.Event()

        def on_complete():
            order.append("complete")
            done.set()

        self.feature_flags.load_feature_flags("d", "a", {}, on_complete)
        self.assertTrue(done.wait(5))

        self.assertEqual(order, ["signal", "complete"])

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_publishes_update_after_failure(self, patch_decide):
        patch_decide.side_effect = Exception("network down")
        receiver = mock.Mock()
        self.signal.subscribe(receiver)

        self.load()

        receiver.assert_called_once_with()

    @mock.patch("posthog_mobile.feature_flags.decide")
    def test_failing_on_complete_releases_loading(self, patch_decide):
        patch_decide.return_value = _decide_response({"beta": True})
        done = threading.Event()

        def on_complete():
            done.set()
            raise Exception("callback failed")

        self.feature_flags.load_feature_flags("d", "a", {}, on_complete)
        self.assertTrue(done.wait(5))
        # the loading flag is released before the callback runs
        self.assertFalse(self.feature_flags.loading)

    @parameterized.expand(
        [
            ("absent", "missing", False),
            ("true", "enabled", True),
            ("false", "disabled", False),
            ("variant", "variant", True),
        ]
    )
    def test_is_feature_enabled(self, _name, key, expected):
        self.cache({"enabled": True, "disabled": False, "variant": "control"})
        self.assertIs(self.feature_flags.is_feature_enabled(key), expected)

    def test_get_feature_flag_returns_raw_value(self):
        self.cache({"enabled": True, "disabled": False, "variant": "control"})
        self.assertEqual(self.feature_flags.get_feature_flag("variant"), "control")
        self.assertIs(self.feature_flags.get_feature_flag("disabled"), False)
        self.assertIsNone(self.feature_flags.get_feature_flag("missing"))

    @parameterized.expand(
        [
            ("object", '{"color": "blue"}', {"color": "blue"}),
            ("array", "[1, 2]", [1, 2]),
            ("string", '"hello"', "hello"),
            ("number", "42", 42),
            ("boolean", "true", True),
        ]
    )
    def test_payload_is_decoded(self, _name, raw, expected):
        self.cache({"flag": True}, {"flag": raw})
        self.assertEqual(self.feature_flags.get_feature_flag_payload("flag"), expected)

    def test_unparseable_payload_falls_back_to_raw_string(self):
        self.cache({"flag": True}, {"flag": "not json {"})

        with self.assertLogs("posthog_mobile", level="ERROR"):
            payload = self.feature_flags.get_feature_flag_payload("flag")

        self.assertEqual(payload, "not json {")

    def test_non_string_payload_is_returned_as_is(self):
        self.cache({"flag": True}, {"flag": {"already": "decoded"}})
        self.assertEqual(
            self.feature_flags.get_feature_flag_payload("flag"), {"already": "decoded"}
        )

    def test_clear(self):
        self.cache({"flag": True}, {"flag": "1"})
        self.feature_flags.clear()
        self.assertIsNone(self.feature_flags.get_feature_flags())
        self.assertIsNone(self.feature_flags.get_feature_flag_payload("flag"))

    def test_reads_do_not_wait_for_a_fetch(self):
        self.cache({"a": True})
        release = threading.Event()
        in_decide = threading.Event()

        def slow_decide(*args, **kwargs):
            in_decide.set()
            release.wait(5)
            return _decide_response({"b": True})

        done = threading.Event()
        with mock.patch("posthog_mobile.feature_flags.decide", side_effect=slow_decide):
            self.feature_flags.load_feature_flags("d", "a", {}, done.set)
            self.assertTrue(in_decide.wait(5))

            self.assertTrue(self.feature_flags.is_feature_enabled("a"))

            release.set()
            self.assertTrue(done.wait(5))
