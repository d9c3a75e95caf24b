"""Game-server lifecycle endpoints."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, status

from vm_manager.auth import require_api_key
from vm_manager.lifecycle import ContainerLifecycleManager
from vm_manager.models import CreateServerRequest, DeleteServerRequest, StartServerRequest
from vm_manager.state import get_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/servers", tags=["servers"], dependencies=[Depends(require_api_key)])


def inspect_response(view: dict[str, Any]) -> dict[str, Any]:
    """Shape the lifecycle inspect view for the dashboard."""
    return {
        "status": "running" if view["running"] else "stopped",
        "created": view["createdAt"],
        "started": view["startedAt"],
        "memory": view["resourceLimits"]["memory"],
        "ports": view["portBindings"],
        **view,
    }


def stats_response(view: dict[str, Any]) -> dict[str, Any]:
    """Shape the lifecycle stats view for the dashboard."""
    return {
        "status": "online" if view["running"] else "offline",
        "cpuUsage": view["cpuPercent"],
        "memoryUsed": view["memoryUsed"],
        "memoryTotal": view["memoryLimit"],
        "uptime": view["uptime"],
        **view,
    }


@router.post("", status_code=status.HTTP_200_OK)
async def create_server(
    request: CreateServerRequest,
    lifecycle: ContainerLifecycleManager = Depends(get_lifecycle),
):
    """Create a game server container.

    The response carries an ``ftp`` block only when the tenant's FTP account
    was provisioned and linked successfully.
    """
    created = await lifecycle.create(
        request.workload_type,
        request.name,
        request.config,
        server_id=request.server_id,
        tenant_id=request.tenant_id,
    )
    response = {
        "containerId": created.container_id,
        "containerName": created.container_name,
        "port": created.port,
        "rconPort": created.rcon_port,
        "host": created.host,
        "status": created.status,
    }
    if created.ftp:
        response["ftp"] = created.ftp
    return response


@router.post("/{container_id}/start")
async def start_server(
    container_id: str,
    request: Optional[StartServerRequest] = Body(None),
    lifecycle: ContainerLifecycleManager = Depends(get_lifecycle),
):
    return await lifecycle.start(container_id, phase=request.phase if request else None)


@router.post("/{container_id}/stop")
async def stop_server(container_id: str, lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    return await lifecycle.stop(container_id)


@router.post("/{container_id}/restart")
async def restart_server(container_id: str, lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    return await lifecycle.restart(container_id)


@router.post("/{container_id}/update")
async def update_server(container_id: str, lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    """Pull the server's image again and restart it."""
    return await lifecycle.update(container_id)


@router.get("/{container_id}")
async def inspect_server(container_id: str, lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    return inspect_response(await lifecycle.inspect(container_id))


@router.get("/{container_id}/status")
async def server_status(container_id: str, lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    """Provisioning progress: download percentage, readiness and runtime state."""
    return await lifecycle.download_status(container_id)


@router.get("/{container_id}/stats")
async def server_stats(container_id: str, lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    return stats_response(await lifecycle.stats(container_id))


@router.delete("/{container_id}")
async def delete_server(
    container_id: str,
    request: Optional[DeleteServerRequest] = Body(None),
    lifecycle: ContainerLifecycleManager = Depends(get_lifecycle),
):
    """Stop and remove a server and release its ports.

    The tenant's FTP account is kept; only this server's folder is removed.
    """
    return await lifecycle.delete(container_id, tenant_id=request.tenant_id if request else None)
