from typing import Any, Callable, Dict, Optional  # noqa: F401
from typing_extensions import Unpack

from posthog_mobile.args import OptionalCaptureArgs
from posthog_mobile.client import Client
from posthog_mobile.event import Event
from posthog_mobile.types import FlagValue
from posthog_mobile.version import VERSION

__version__ = VERSION

"""Settings."""
api_key = None  # type: Optional[str]
host = None  # type: Optional[str]
on_error = None  # type: Optional[Callable]
debug = False  # type: bool
send = True  # type: bool
sync_mode = False  # type: bool
disabled = False  # type: bool
flush_at = 20  # type: int
max_batch_size = 50  # type: int
max_queue_size = 1000  # type: int
flush_interval = 30  # type: int
feature_flags_request_timeout_seconds = 10  # type: int
# Directory where identity, flags and queued events are kept. Memory only when None
storage_path = None  # type: Optional[str]
preload_feature_flags = True  # type: bool
send_feature_flag_event = True  # type: bool

default_client = None  # type: Optional[Client]


def capture(event: str, **kwargs: Unpack[OptionalCaptureArgs]) -> Optional[Event]:
    """
    Capture anything a user does within your app.

    A `capture` call requires an event name. We recommend using [verb] [noun], like
    `movie played` or `movie updated`, to easily identify what your events mean later on.

    For example:
    ```python
    posthog_mobile.capture('movie played', properties={'movie_id': '123', 'category': 'romcom'})

    # Set properties on the person at the same time
    posthog_mobile.capture('plan upgraded', user_properties={'plan': 'pro'})
    ```
    """
    return _proxy("capture", event, **kwargs)


def identify(
    distinct_id,  # type: str
    user_properties=None,  # type: Optional[Dict]
    user_properties_set_once=None,  # type: Optional[Dict]
):
    # type: (...) -> Optional[Event]
    """
    Identify the current user, following events are attributed to `distinct_id`.

    For example:
    ```python
    posthog_mobile.identify('user-123', user_properties={'email': 'max@hedgehog.com'})
    ```
    """
    return _proxy(
        "identify",
        distinct_id,
        user_properties=user_properties,
        user_properties_set_once=user_properties_set_once,
    )


def alias(alias):
    # type: (str) -> Optional[Event]
    """Create an alias for the current user."""
    return _proxy("alias", alias)


def screen(screen_title, properties=None):
    # type: (str, Optional[Dict]) -> Optional[Event]
    """Capture a screen view."""
    return _proxy("screen", screen_title, properties=properties)


def group(group_type, group_key, group_properties=None):
    # type: (str, str, Optional[Dict]) -> Optional[Event]
    """
    Associate the current user with a group.

    For example:
    ```python
    posthog_mobile.group('company', 'id:5', {'name': 'Awesome Inc.'})
    ```
    """
    return _proxy("group", group_type, group_key, group_properties=group_properties)


def register(properties):
    # type: (Dict) -> None
    """Register properties that are sent with every following event."""
    _proxy("register", properties)


def unregister(key):
    # type: (str) -> None
    _proxy("unregister", key)


def reset():
    """Forget the current user and everything captured for them."""
    _proxy("reset")


def opt_out():
    _proxy("opt_out")


def opt_in():
    _proxy("opt_in")


def is_opt_out():
    # type: () -> bool
    return _proxy("is_opt_out")


def get_distinct_id():
    # type: () -> str
    return _proxy("get_distinct_id")


def get_anonymous_id():
    # type: () -> str
    return _proxy("get_anonymous_id")


def reload_feature_flags(callback=None):
    # type: (Optional[Callable[[], None]]) -> bool
    """
    Fetch the feature flags for the current user in the background.

    `callback` is called once the flags were loaded, or the load failed.
    """
    return _proxy("reload_feature_flags", callback)


def is_feature_enabled(key):
    # type: (str) -> bool
    """
    Use feature flags to enable or disable features for users.

    For example:
    ```python
    if posthog_mobile.is_feature_enabled('beta feature'):
        # do what you want
    ```
    """
    return _proxy("is_feature_enabled", key)


def get_feature_flag(key):
    # type: (str) -> Optional[FlagValue]
    """
    Get the cached value of a feature flag, a boolean or the variant name.

    For example:
    ```python
    if posthog_mobile.get_feature_flag('beta-feature') == 'some-variant':
        # do A
    ```
    """
    return _proxy("get_feature_flag", key)


def get_feature_flag_payload(key):
    # type: (str) -> Any
    return _proxy("get_feature_flag_payload", key)


def get_feature_flags():
    # type: () -> Optional[Dict[str, FlagValue]]
    """Returns the cached feature flags, None until they were loaded once."""
    return _proxy("get_feature_flags")


def set_reachable(reachable):
    # type: (bool) -> None
    _proxy("set_reachable", reachable)


def flush():
    """Tell the client to flush."""
    _proxy("flush")


def join():
    """End the consumer thread"""
    _proxy("join")


def shutdown():
    """Deliver what is left in the queue and cleanly shutdown the client"""
    _proxy("shutdown")


def setup():
    global default_client
    if not default_client:
        if not api_key:
            raise ValueError("API key is required")
        default_client = Client(
            api_key,
            host=host,
            debug=debug,
            on_error=on_error,
            send=send,
            sync_mode=sync_mode,
            flush_at=flush_at,
            max_batch_size=max_batch_size,
            max_queue_size=max_queue_size,
            flush_interval=flush_interval,
            feature_flags_request_timeout_seconds=feature_flags_request_timeout_seconds,
            storage_path=storage_path,
            preload_feature_flags=preload_feature_flags,
            send_feature_flag_event=send_feature_flag_event,
        )

    # always set incase user changes it
    default_client.disabled = disabled
    default_client.debug = debug


def _proxy(method, *args, **kwargs):
    """Create an analytics client if one doesn't exist and send to it."""
    setup()

    fn = getattr(default_client, method)
    return fn(*args, **kwargs)


class Posthog(Client):
    pass
