import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID, uuid4

from dateutil.tz import tzutc

from posthog_mobile.types import EventJSON
from posthog_mobile.utils import from_iso8601, guess_timezone, sanitize, to_iso8601

log = logging.getLogger("posthog_mobile")


def _to_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    if isinstance(value, str):
        try:
            return UUID(value)
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class Event:
    """
    A single analytics event.

    Properties are sanitized on construction, so an Event never carries values
    that can't be encoded as JSON. The uuid is generated once and identifies the
    event on the wire and in the persisted queue.
    """

    name: str
    distinct_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[Union[datetime, str]] = None
    uuid: Optional[Union[UUID, str]] = None

    def __post_init__(self):
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Event name must be a non-empty string")
        if not self.distinct_id or not isinstance(self.distinct_id, str):
            raise ValueError("Event distinct_id must be a non-empty string")

        timestamp = self.timestamp
        if isinstance(timestamp, str):
            timestamp = from_iso8601(timestamp)
        if timestamp is None:
            timestamp = datetime.now(tz=tzutc())

        # frozen dataclass, normalize in place once
        object.__setattr__(self, "properties", sanitize(self.properties))
        object.__setattr__(self, "timestamp", guess_timezone(timestamp))
        object.__setattr__(self, "uuid", _to_uuid(self.uuid) or uuid4())

    def to_json(self) -> EventJSON:
        return {
            "event": self.name,
            "distinct_id": self.distinct_id,
            "properties": self.properties,
            "timestamp": to_iso8601(self.timestamp),
            "uuid": str(self.uuid),
        }

    @classmethod
    def from_json(cls, data: Union[dict, str, bytes]) -> Optional["Event"]:
        """
        Builds an Event from its wire or persisted JSON shape.

        Older payloads are accepted too: a top level `$set`, `distinct_id` only
        inside the properties and `message_id` in place of `uuid`. Returns None
        when the event name or a distinct id can't be found.
        """
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except ValueError as e:
                log.warning("Could not decode event JSON: %s", e)
                return None

        if not isinstance(data, dict):
            return None

        name = data.get("event")
        if not isinstance(name, str) or not name:
            return None

        properties = data.get("properties")
        properties = dict(properties) if isinstance(properties, dict) else {}

        # v2 payloads carried $set at the top level
        set_properties = data.get("$set")
        if isinstance(set_properties, dict):
            properties["$set"] = set_properties

        distinct_id = data.get("distinct_id")
        if not isinstance(distinct_id, str) or not distinct_id:
            distinct_id = properties.get("distinct_id")
        if not isinstance(distinct_id, str) or not distinct_id:
            return None

        uuid = data.get("uuid") or data.get("message_id")

        return cls(
            name=name,
            distinct_id=distinct_id,
            properties=properties,
            timestamp=from_iso8601(data.get("timestamp")),
            uuid=_to_uuid(uuid),
        )
