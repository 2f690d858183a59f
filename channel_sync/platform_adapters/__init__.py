from .base_adapter import (
    AdapterError,
    AuthorizationError,
    ChannelAdapter,
    FetchResult,
    MalformedResponseError,
    TransportError,
)
from .ical_adapter import IcalAdapter
from .lodgify_adapter import LodgifyAdapter, TestKeyResult

__all__ = [
    "AdapterError",
    "AuthorizationError",
    "ChannelAdapter",
    "FetchResult",
    "IcalAdapter",
    "LodgifyAdapter",
    "MalformedResponseError",
    "TestKeyResult",
    "TransportError",
]
