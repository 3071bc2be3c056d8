"""
Port forward endpoints.
Create, inspect, touch, reconnect and stop Kubernetes tunnels for saved connections.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
import logging

from ..schemas import (
    CreateForwardRequest,
    EndpointResponse,
    ForwardListResponse,
    ForwardResponse,
    ForwardStatsResponse,
)
from ..services.portforward import (
    ConnectionNotFound,
    ForwardNotFound,
    ForwardTimeout,
    NoReadyBackend,
    NotClusterBacked,
    PortForwardError,
    PortForwardManager,
    ResourceExhausted,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def get_port_forward_manager(request: Request) -> PortForwardManager:
    """Manager created at startup (overridden in tests)."""
    manager = getattr(request.app.state, "port_forward_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Port forward manager not available")
    return manager


def to_http_error(error: PortForwardError) -> HTTPException:
    """Map port-forward failures onto HTTP status codes."""
    if isinstance(error, (ForwardNotFound, ConnectionNotFound)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, NotClusterBacked):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, ResourceExhausted):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, NoReadyBackend):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, ForwardTimeout):
        return HTTPException(status_code=504, detail=str(error))
    return HTTPException(status_code=500, detail=f"Failed to create port forward: {error}")


def to_response(forward) -> ForwardResponse:
    return ForwardResponse(**forward.to_dict())


@router.post("/port-forward", response_model=ForwardResponse)
async def create_forward(
    body: CreateForwardRequest,
    manager: PortForwardManager = Depends(get_port_forward_manager)
):
    """Create a port forward for a connection, or reuse its active one."""
    try:
        forward = await manager.create(body.connection_id, body.namespace, body.service_name, body.remote_port)
    except PortForwardError as e:
        logger.error(f"Failed to create port forward for connection {body.connection_id}: {e}")
        raise to_http_error(e)
    return to_response(forward)


@router.get("/port-forward", response_model=ForwardListResponse)
async def list_forwards(manager: PortForwardManager = Depends(get_port_forward_manager)):
    """List all port forwards."""
    forwards = [to_response(forward) for forward in manager.list()]
    return ForwardListResponse(forwards=forwards, total=len(forwards))


@router.get("/port-forward/stats", response_model=ForwardStatsResponse)
async def forward_stats(manager: PortForwardManager = Depends(get_port_forward_manager)):
    """Forward counts per status."""
    return ForwardStatsResponse(**manager.stats())


@router.get("/port-forward/by-connection", response_model=ForwardResponse)
async def get_forward_by_connection(
    connection_id: str = Query(..., min_length=1),
    manager: PortForwardManager = Depends(get_port_forward_manager)
):
    """Get the port forward serving a connection."""
    try:
        return to_response(manager.get_by_connection(connection_id))
    except ForwardNotFound as e:
        raise to_http_error(e)


@router.get("/port-forward/{forward_id}", response_model=ForwardResponse)
async def get_forward(forward_id: str, manager: PortForwardManager = Depends(get_port_forward_manager)):
    """Get a single port forward."""
    try:
        return to_response(manager.get(forward_id))
    except ForwardNotFound as e:
        raise to_http_error(e)


@router.delete("/port-forward/{forward_id}")
async def stop_forward(forward_id: str, manager: PortForwardManager = Depends(get_port_forward_manager)):
    """Stop a port forward and release its local port."""
    stopped = await manager.stop(forward_id)
    if stopped is None:
        raise HTTPException(status_code=404, detail=f"forward not found: {forward_id}")
    return {"status": "stopped"}


@router.post("/port-forward/{forward_id}/reconnect", response_model=ForwardResponse)
async def reconnect_forward(
    forward_id: str,
    new_port: bool = Query(False, description="Bind a different local port"),
    manager: PortForwardManager = Depends(get_port_forward_manager)
):
    """Replace a (typically errored) forward with a fresh tunnel."""
    try:
        forward = await manager.reconnect(forward_id, new_port=new_port)
    except PortForwardError as e:
        logger.error(f"Failed to reconnect port forward {forward_id}: {e}")
        raise to_http_error(e)
    return to_response(forward)


@router.put("/port-forward/{forward_id}/touch")
async def touch_forward(forward_id: str, manager: PortForwardManager = Depends(get_port_forward_manager)):
    """Mark a forward as in use."""
    try:
        manager.touch(forward_id)
    except ForwardNotFound as e:
        raise to_http_error(e)
    return {"status": "updated"}


@router.get("/connections/{connection_id}/endpoint", response_model=EndpointResponse)
async def connection_endpoint(
    connection_id: str,
    manager: PortForwardManager = Depends(get_port_forward_manager)
):
    """Local host/port to dial for a cluster-backed connection, opening a tunnel if needed."""
    try:
        forward = await manager.resolve(connection_id)
    except PortForwardError as e:
        raise to_http_error(e)

    return EndpointResponse(
        connection_id=connection_id,
        host=manager.local_host,
        port=forward.local_port,
        forward_id=forward.id
    )
