import logging
import math
import platform
import sys
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

import distro  # For Linux OS detection
from dateutil.parser import isoparse
from dateutil.tz import tzlocal, tzutc

log = logging.getLogger("posthog_mobile")


def is_naive(dt):
    """Determines if a given datetime.datetime is naive."""
    return dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None


def guess_timezone(dt):
    """Attempts to convert a naive datetime to an aware datetime."""
    if is_naive(dt):
        # attempts to guess the datetime.datetime.now() local timezone
        # case, and then defaults to utc
        delta = datetime.now() - dt
        if delta.total_seconds() < 5:
            # this was created using datetime.datetime.now()
            # so we are in the local timezone
            return dt.replace(tzinfo=tzlocal())
        else:
            # at this point, the best we can do is guess UTC
            return dt.replace(tzinfo=tzutc())

    return dt


def to_iso8601(dt: datetime) -> str:
    """Formats an aware datetime as UTC ISO-8601 with millisecond precision."""
    return guess_timezone(dt).astimezone(tzutc()).isoformat(timespec="milliseconds")


def from_iso8601(value: Any) -> Optional[datetime]:
    """Parses an ISO-8601 string, returns None when it can't."""
    if not isinstance(value, str):
        return None
    try:
        return guess_timezone(isoparse(value))
    except (ValueError, OverflowError):
        return None


def remove_trailing_slash(host):
    if host.endswith("/"):
        return host[:-1]
    return host


def is_json_value(value) -> bool:
    """
    Whether `value` can be sent as-is in an event's properties.

    Strings, finite numbers, booleans and None are accepted, as are lists, tuples
    and string-keyed dicts made only of such values.
    """
    if value is None or isinstance(value, (str, bool, int)):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, (list, tuple)):
        return all(is_json_value(item) for item in value)
    if isinstance(value, dict):
        return all(
            isinstance(k, str) and is_json_value(v) for k, v in value.items()
        )
    return False


def _normalize(value):
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    return value


def sanitize(properties) -> dict[str, Any]:
    """
    Filters a properties mapping down to JSON-safe values.

    Keys holding anything that is not JSON-safe are dropped, nothing is raised.
    Tuples come back as lists, so the result survives a JSON round trip unchanged.
    """
    data = {}
    if not properties:
        return data

    for key, value in properties.items():
        if not isinstance(key, str):
            log.debug("Dropping property with non string key %r", key)
            continue
        if not is_json_value(value):
            log.debug(
                'Dropping property "%s", value of type %s is not JSON serializable.',
                key,
                type(value).__name__,
            )
            continue
        data[key] = _normalize(value)
    return data


class SizeLimitedDict(defaultdict):
    def __init__(self, max_size, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_size = max_size

    def __setitem__(self, key, value):
        if len(self) >= self.max_size:
            self.clear()

        super().__setitem__(key, value)


def get_os_info():
    """
    Returns standardized OS name and version information.
    Similar to how user agent parsing works in JS.
    """
    os_name = ""
    os_version = ""

    platform_name = sys.platform

    if platform_name.startswith("win"):
        os_name = "Windows"
        win_version = platform.win32_ver()[0]
        if win_version:
            os_version = win_version

    elif platform_name == "darwin":
        os_name = "Mac OS X"
        mac_version = platform.mac_ver()[0]
        if mac_version:
            os_version = mac_version

    elif platform_name.startswith("linux"):
        os_name = "Linux"
        linux_info = distro.info()
        if linux_info["version"]:
            os_version = linux_info["version"]

    else:
        os_name = platform_name
        os_version = platform.release()

    return os_name, os_version


def system_context() -> dict[str, Any]:
    os_name, os_version = get_os_info()

    return {
        "$python_runtime": platform.python_implementation(),
        "$python_version": "%s.%s.%s" % (sys.version_info[:3]),
        "$os": os_name,
        "$os_version": os_version,
    }
