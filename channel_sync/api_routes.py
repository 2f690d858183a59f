"""
Channel Sync - Operator API Routes

Endpoints for managing channel connections, triggering syncs and reading
run history. All routes live under ``/api/v1/channels``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from .exceptions import (
    BusyError,
    ChannelSyncError,
    ConnectionDisabledError,
    ConnectionNotFoundError,
    ConnectionValidationError,
    DuplicateConnectionError,
)
from .schemas import (
    BulkSyncResponse,
    ConnectionCreate,
    ConnectionResponse,
    ConnectionUpdate,
    LodgifyTestRequest,
    LodgifyTestResponse,
    StatsResponse,
    SyncLogResponse,
    SyncResultResponse,
)
from .service import ChannelService

ERROR_STATUS = {
    ConnectionNotFoundError: status.HTTP_404_NOT_FOUND,
    BusyError: status.HTTP_409_CONFLICT,
    ConnectionDisabledError: status.HTTP_409_CONFLICT,
    DuplicateConnectionError: status.HTTP_409_CONFLICT,
    ConnectionValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def to_http_error(error: ChannelSyncError) -> HTTPException:
    status_code = ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=error.message)


def get_service(request: Request) -> ChannelService:
    return request.app.state.channel_service


# =============================================================================
# ROUTER
# =============================================================================

router = APIRouter(prefix="/api/v1/channels", tags=["Channel Sync"])


# =============================================================================
# CONNECTION ENDPOINTS
# =============================================================================

@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    property_id: Optional[str] = Query(None),
    service: ChannelService = Depends(get_service),
) -> list[ConnectionResponse]:
    connections = await service.list_connections(property_id)
    return [ConnectionResponse.from_connection(c) for c in connections]


@router.post(
    "/connections",
    response_model=ConnectionResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_connection(
    payload: ConnectionCreate,
    service: ChannelService = Depends(get_service),
) -> ConnectionResponse:
    try:
        connection = await service.create_connection(payload)
    except ChannelSyncError as e:
        raise to_http_error(e)
    return ConnectionResponse.from_connection(connection)


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    service: ChannelService = Depends(get_service),
) -> ConnectionResponse:
    try:
        connection = await service.get_connection(connection_id)
    except ChannelSyncError as e:
        raise to_http_error(e)
    return ConnectionResponse.from_connection(connection)


@router.put("/connections/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    connection_id: str,
    payload: ConnectionUpdate,
    service: ChannelService = Depends(get_service),
) -> ConnectionResponse:
    try:
        connection = await service.update_connection(connection_id, payload)
    except ChannelSyncError as e:
        raise to_http_error(e)
    return ConnectionResponse.from_connection(connection)


@router.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connection(
    connection_id: str,
    service: ChannelService = Depends(get_service),
) -> Response:
    """
    Delete a connection and its sync history. Stored bookings are kept.

    Answers 409 while a sync run for the connection is in flight.
    """
    try:
        await service.delete_connection(connection_id)
    except ChannelSyncError as e:
        raise to_http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# SYNC ENDPOINTS
# =============================================================================

@router.post("/connections/{connection_id}/sync", response_model=SyncResultResponse)
async def sync_connection(
    connection_id: str,
    service: ChannelService = Depends(get_service),
) -> SyncResultResponse:
    """
    Run a manual sync and wait for it.

    Adapter failures are reported in the result with status ``error``; a
    connection that is already syncing answers 409.
    """
    try:
        result = await service.sync_one(connection_id)
    except ChannelSyncError as e:
        raise to_http_error(e)
    return SyncResultResponse.model_validate(result)


@router.post("/sync-all", response_model=BulkSyncResponse)
async def sync_all(
    service: ChannelService = Depends(get_service),
) -> BulkSyncResponse:
    bulk = await service.sync_all()
    return BulkSyncResponse.model_validate(bulk)


@router.get("/sync-logs", response_model=list[SyncLogResponse])
async def get_sync_logs(
    connection_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    service: ChannelService = Depends(get_service),
) -> list[SyncLogResponse]:
    logs = await service.get_sync_logs(connection_id, limit)
    return [SyncLogResponse.model_validate(log) for log in logs]


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    service: ChannelService = Depends(get_service),
) -> StatsResponse:
    stats = await service.get_stats()
    return StatsResponse.model_validate(stats)


# =============================================================================
# LODGIFY
# =============================================================================

@router.post("/lodgify/test", response_model=LodgifyTestResponse)
async def test_lodgify_key(
    payload: LodgifyTestRequest,
    service: ChannelService = Depends(get_service),
) -> LodgifyTestResponse:
    """Validate a Lodgify API key. Always 200; the verdict is in ``valid``."""
    result = await service.test_lodgify_key(payload.api_key)
    return LodgifyTestResponse.model_validate(result)
