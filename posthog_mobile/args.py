from datetime import datetime
from typing import Any, Dict, Optional, TypedDict, Union
from uuid import UUID

from typing_extensions import NotRequired  # For Python < 3.11 compatibility


class OptionalCaptureArgs(TypedDict):
    """Optional arguments for the capture method.

    Args:
        properties: Dictionary of properties to track with the event. Values that can't be
            sent as JSON are dropped.
        user_properties: Properties to set on the person, sent as `$set`.
        user_properties_set_once: Properties to set on the person only if they aren't set yet,
            sent as `$set_once`.
        groups: Group identifiers to associate with this event (format: {group_type: group_key}).
            They are merged over the groups registered with `group()`.
        timestamp: When the event occurred (defaults to current time)
        uuid: Unique identifier for this specific event. If not provided, one is generated.
    """

    properties: NotRequired[Optional[Dict[str, Any]]]
    user_properties: NotRequired[Optional[Dict[str, Any]]]
    user_properties_set_once: NotRequired[Optional[Dict[str, Any]]]
    groups: NotRequired[Optional[Dict[str, str]]]
    timestamp: NotRequired[Optional[Union[datetime, str]]]
    uuid: NotRequired[Optional[Union[UUID, str]]]
