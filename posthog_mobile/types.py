from typing import Any, Optional, TypedDict, Union

FlagValue = Union[bool, str]


class DecideResponse(TypedDict, total=False):
    featureFlags: dict[str, FlagValue]
    # flag key -> JSON encoded payload
    featureFlagPayloads: dict[str, str]
    errorsWhileComputingFlags: bool
    quotaLimited: Optional[list[str]]


class EventJSON(TypedDict):
    event: str
    distinct_id: str
    properties: dict[str, Any]
    timestamp: str
    uuid: str
