"""
Channel API Schemas
===================

Request and response models for the operator HTTP API.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .models import Connection, ConnectionType, Platform, SyncStatus, SyncType


# =============================================================================
# CONNECTIONS
# =============================================================================

class ConnectionCreate(BaseModel):
    property_id: str = Field(min_length=1)
    platform: Platform
    connection_type: ConnectionType = ConnectionType.ICAL
    ical_url: Optional[str] = None
    api_key: Optional[str] = None
    account_id: Optional[str] = None
    external_property_id: Optional[str] = None
    auto_sync_enabled: bool = False
    sync_interval_minutes: int = Field(default=60, gt=0)
    enabled: bool = True


class ConnectionUpdate(BaseModel):
    """Partial update; only fields present in the request are applied."""
    connection_type: Optional[ConnectionType] = None
    ical_url: Optional[str] = None
    api_key: Optional[str] = None
    account_id: Optional[str] = None
    external_property_id: Optional[str] = None
    auto_sync_enabled: Optional[bool] = None
    sync_interval_minutes: Optional[int] = Field(default=None, gt=0)
    enabled: Optional[bool] = None


class ConnectionResponse(BaseModel):
    id: str
    property_id: str
    platform: Platform
    connection_type: ConnectionType
    ical_url: Optional[str] = None
    has_api_key: bool
    account_id: Optional[str] = None
    external_property_id: Optional[str] = None
    auto_sync_enabled: bool
    sync_interval_minutes: int
    enabled: bool
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None
    last_sync_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_connection(cls, connection: Connection) -> "ConnectionResponse":
        # API keys are write-only
        return cls(
            id=connection.id,
            property_id=connection.property_id,
            platform=connection.platform,
            connection_type=connection.connection_type,
            ical_url=connection.ical_url,
            has_api_key=bool(connection.api_key),
            account_id=connection.account_id,
            external_property_id=connection.external_property_id,
            auto_sync_enabled=connection.auto_sync_enabled,
            sync_interval_minutes=connection.sync_interval_minutes,
            enabled=connection.enabled,
            last_sync_at=connection.last_sync_at,
            last_sync_status=connection.last_sync_status,
            last_sync_message=connection.last_sync_message,
            created_at=connection.created_at,
            updated_at=connection.updated_at
        )


# =============================================================================
# SYNC RUNS
# =============================================================================

class SyncResultResponse(BaseModel):
    connection_id: str
    status: SyncStatus
    added: int
    updated: int
    errors: int
    conflicts: int
    warnings: int
    message: Optional[str] = None
    log_id: Optional[str] = None

    class Config:
        from_attributes = True


class SyncFailureResponse(BaseModel):
    connection_id: str
    error: str

    class Config:
        from_attributes = True


class BulkSyncResponse(BaseModel):
    results: list[SyncResultResponse]
    failures: list[SyncFailureResponse]

    class Config:
        from_attributes = True


class SyncLogResponse(BaseModel):
    id: str
    connection_id: str
    property_id: str
    platform: Platform
    sync_type: SyncType
    status: SyncStatus
    added: int
    updated: int
    errors: int
    message: Optional[str] = None
    started_at: datetime
    completed_at: datetime

    class Config:
        from_attributes = True


class StatsResponse(BaseModel):
    total_connections: int
    active_connections: int
    auto_sync_count: int
    synced_today: int
    error_count: int
    platform_counts: dict[str, int]
    runs_today: int
    failed_runs_today: int

    class Config:
        from_attributes = True


# =============================================================================
# LODGIFY
# =============================================================================

class LodgifyTestRequest(BaseModel):
    api_key: str


class LodgifyTestResponse(BaseModel):
    valid: bool
    message: str
    properties: list[dict[str, Any]] = []

    class Config:
        from_attributes = True
