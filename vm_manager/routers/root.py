"""Root endpoint router: liveness, host status and utilities."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query

from vm_manager.auth import require_api_key
from vm_manager.lifecycle import ContainerLifecycleManager
from vm_manager.ports import PortAllocator
from vm_manager.schedule import next_run
from vm_manager.state import get_allocator, get_lifecycle

router = APIRouter(tags=["root"])


@router.get(
    "/health",
    summary="Liveness probe",
    description="Unauthenticated liveness probe",
)
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/api/status", dependencies=[Depends(require_api_key)])
async def system_status(lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    """Host and container runtime summary.

    Returns:
        Container count, memory, CPUs and runtime version of the host.
    """
    return await lifecycle.system_status()


@router.get("/api/containers", dependencies=[Depends(require_api_key)])
async def list_containers(lifecycle: ContainerLifecycleManager = Depends(get_lifecycle)):
    containers = await lifecycle.list_containers()
    return {"total": len(containers), "containers": containers}


@router.get("/api/ports", dependencies=[Depends(require_api_key)])
async def list_ports(allocator: PortAllocator = Depends(get_allocator)):
    """Currently claimed host ports and the configured range per workload type."""
    return {
        "claimed": sorted(allocator.claimed()),
        "ranges": {
            workload_type.value: {"start": port_range.start, "end": port_range.end}
            for workload_type, port_range in allocator.ranges.items()
        },
    }


@router.get("/api/schedules/next-run", dependencies=[Depends(require_api_key)])
async def schedule_next_run(cron: str = Query(..., description="5-field crontab expression")):
    fire_time = next_run(cron)
    return {"cron": cron, "nextRun": fire_time.isoformat() if fire_time else None}
