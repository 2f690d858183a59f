"""
Sync Engine Exceptions
======================

Connection-level errors raised by the coordinator, scheduler and service.
Adapter errors (transport, authorization, malformed response) live next to
the adapter base class in ``platform_adapters.base_adapter``.
"""

from typing import Optional


class ChannelSyncError(Exception):
    """Base exception for the sync engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConnectionNotFoundError(ChannelSyncError):
    """Raised when a connection id does not exist."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection not found: {connection_id}")


class ConnectionDisabledError(ChannelSyncError):
    """Raised when a sync is requested for a disabled connection."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection is disabled: {connection_id}")


class BusyError(ChannelSyncError):
    """Raised when a sync for the connection is already in flight."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Sync already running for connection {connection_id}")


class DuplicateConnectionError(ChannelSyncError):
    """Raised when a second enabled connection targets the same listing."""

    def __init__(
        self,
        property_id: str,
        platform: str,
        external_property_id: Optional[str],
        existing_id: str
    ):
        self.existing_id = existing_id
        super().__init__(
            f"An enabled {platform} connection already exists for property "
            f"{property_id} (external property {external_property_id or '-'}): "
            f"{existing_id}"
        )


class ConnectionValidationError(ChannelSyncError):
    """Raised when connection fields are inconsistent."""
    pass


class UnsupportedConnectionError(ChannelSyncError):
    """Raised when no adapter can sync the connection."""
    pass


class PersistenceError(ChannelSyncError):
    """Raised when writing sync results to the stores fails."""
    pass
