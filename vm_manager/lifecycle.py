"""Container lifecycle management for game servers.

Creates, starts, stops, restarts, updates and deletes workload containers,
owns the two-phase (download, then play) provisioning flow and reports
inspect/stats/progress views computed from the runtime's raw data.
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional

from vm_manager.docker_client import DockerClient
from vm_manager.errors import NotFound, VMManagerError
from vm_manager.ftp import FTPProvisioner, username_for
from vm_manager.log_relay import download_progress
from vm_manager.models import CreatedServer, SystemConfig, WorkloadType
from vm_manager.ports import PortAllocator, ports_from_container_attrs
from vm_manager.runtime import run_blocking
from vm_manager.workloads import (
    PHASE_DOWNLOAD,
    PHASE_GAME,
    build_download_spec,
    build_labels,
    build_service_spec,
    container_name,
    data_volume_name,
    get_profile,
    phase_of,
    safe_name_part,
    stored_launch_state,
    workload_of,
)

logger = logging.getLogger(__name__)

_DOCKER_TIMESTAMP = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$"
)
PROGRESS_LOG_TAIL = 200


def parse_docker_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse Docker's RFC 3339 timestamps (nanosecond precision, zero value = None)."""
    if not value or value.startswith("0001-"):
        return None
    match = _DOCKER_TIMESTAMP.match(value)
    if not match:
        return None
    base, fraction, offset = match.groups()
    micros = (fraction or "0")[:6].ljust(6, "0")
    offset = "+00:00" if offset in (None, "Z") else offset
    return datetime.fromisoformat(f"{base}.{micros}{offset}")


def format_uptime(seconds: int) -> str:
    days, rest = divmod(max(seconds, 0), 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m {secs}s"


def cpu_percent(stats: dict) -> float:
    """CPU usage from the delta of two cumulative samples over system time."""
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    cpu_delta = ((cpu_stats.get("cpu_usage") or {}).get("total_usage", 0)
                 - (precpu_stats.get("cpu_usage") or {}).get("total_usage", 0))
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)
    online_cpus = cpu_stats.get("online_cpus")
    if not online_cpus:
        online_cpus = len((cpu_stats.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    if system_delta <= 0 or cpu_delta <= 0:
        return 0.0
    return round(cpu_delta / system_delta * online_cpus * 100.0, 2)


class ContainerLifecycleManager:
    """Runs game-server containers on the local container runtime."""

    def __init__(
        self,
        config: SystemConfig,
        docker_client: DockerClient,
        allocator: PortAllocator,
        provisioner: Optional[FTPProvisioner] = None,
    ):
        self.config = config
        self.docker = docker_client
        self.allocator = allocator
        self.provisioner = provisioner

    async def _call(self, func, *args, timeout: Optional[float] = None, **kwargs):
        return await run_blocking(func, *args, timeout=timeout or self.config.runtime_timeout, **kwargs)

    async def reconcile(self) -> set[int]:
        """Pre-claim every host port held by any container the runtime knows."""
        attrs = await self._call(self.docker.list_container_attrs)
        return self.allocator.reconcile(attrs)

    async def create(
        self,
        workload_type: WorkloadType,
        name: str,
        config: Optional[dict[str, Any]] = None,
        server_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> CreatedServer:
        """Create a server container and, opportunistically, its FTP link.

        The download-heavy workload gets a download-only container that is
        started right away and exits once the game is installed.
        """
        config = config or {}
        profile = get_profile(workload_type)
        # raises CapacityExhausted before anything touches the runtime
        port, rcon_port = self.allocator.allocate_pair(workload_type, self.config.management_port_offset)

        server_key = safe_name_part(server_id) if server_id else str(int(time.time() * 1000))
        phase = PHASE_DOWNLOAD if profile.two_phase else PHASE_GAME
        name_in_runtime = container_name(workload_type, server_key, phase)
        labels = build_labels(workload_type, phase, server_key, tenant_id, port, rcon_port, name, config)
        if profile.two_phase:
            spec = build_download_spec(name_in_runtime, server_key, labels)
        else:
            spec = build_service_spec(workload_type, name_in_runtime, name, config, port, rcon_port, labels)

        logger.info(f"Creating {workload_type.value} server: {name} ({name_in_runtime})")
        try:
            await self._call(self.docker.ensure_image, spec["image"], timeout=self.config.pull_timeout)
            container = await self._call(self.docker.create_container, **spec)
        except Exception:
            self.allocator.release(port, rcon_port)
            logger.error(f"Creating {name_in_runtime} failed, released ports {port}/{rcon_port}")
            raise

        status = "created"
        if profile.two_phase:
            try:
                await self._call(self.docker.start_container, container.id)
                status = "downloading"
            except VMManagerError as e:
                logger.error(f"Download container {container.id} did not start: {e.message}")

        ftp = None
        if tenant_id and self.provisioner is not None and self.config.ftp.enabled:
            ftp = await self._provision_ftp(container.id, tenant_id, name, port)

        return CreatedServer(
            container_id=container.id,
            container_name=name_in_runtime,
            port=port,
            rcon_port=rcon_port,
            host=self.config.vm_host,
            status=status,
            ftp=ftp,
        )

    async def _provision_ftp(self, container_id: str, tenant_id: str, name: str,
                             port: int) -> Optional[dict[str, Any]]:
        try:
            account = await self.provisioner.create_account(tenant_id)
            link = await self.provisioner.link_server(
                container_id, account.username, name, self.config.vm_host, port
            )
        except Exception as e:
            logger.warning(f"FTP provisioning for tenant {tenant_id} failed, continuing without it: {e}")
            return None
        ftp = {
            "username": account.username,
            "host": account.host,
            "port": account.port,
            "ftpPath": link["ftpPath"],
        }
        if account.password:
            ftp["password"] = account.password
        return ftp

    async def start(self, container_id: str, phase: Optional[str] = None) -> dict[str, Any]:
        """Start a server.

        For a two-phase workload whose container is in its download phase,
        the download container is not started again: a game container is
        created from the recorded ports and config, started, and replaces it.
        """
        attrs = await self._call(self.docker.inspect_container, container_id)
        workload = workload_of(attrs)
        if workload is not None and get_profile(workload).two_phase and phase_of(attrs, phase) == PHASE_DOWNLOAD:
            return await self._start_game_phase(container_id, workload, attrs)

        logger.info(f"Starting container: {container_id}")
        await self._call(self.docker.start_container, container_id)
        return {"message": "Server started", "status": "running"}

    async def _start_game_phase(self, download_id: str, workload: WorkloadType, attrs: dict) -> dict[str, Any]:
        state = stored_launch_state(attrs)
        if (attrs.get("State") or {}).get("Running"):
            logger.warning(f"Download container {download_id} is still running; creating game container anyway")

        port, rcon_port = state["port"], state["rcon_port"]
        allocated = False
        if port is None or rcon_port is None:
            # created before launch state was recorded on the container
            port, rcon_port = self.allocator.allocate_pair(workload, self.config.management_port_offset)
            allocated = True
        server_key = state["server_key"] or download_id[:12]
        game_name = container_name(workload, server_key, PHASE_GAME)
        labels = build_labels(
            workload, PHASE_GAME, server_key, state["tenant_id"], port, rcon_port,
            state["display_name"], state["config"],
        )
        spec = build_service_spec(
            workload, game_name, state["display_name"] or game_name, state["config"],
            port, rcon_port, labels, server_key=server_key,
        )

        logger.info(f"Download phase of {server_key} finished, creating game container {game_name}")
        try:
            game_id = await self._existing_container_id(game_name)
            if game_id is None:
                await self._call(self.docker.ensure_image, spec["image"], timeout=self.config.pull_timeout)
                game_id = (await self._call(self.docker.create_container, **spec)).id
            await self._call(self.docker.start_container, game_id)
        except Exception:
            if allocated:
                self.allocator.release(port, rcon_port)
            raise

        try:
            await self._call(self.docker.remove_container, download_id, force=True)
        except VMManagerError as e:
            logger.warning(f"Could not remove download container {download_id}: {e.message}")

        return {
            "message": "Game server created and started",
            "status": "running",
            "containerId": game_id,
            "port": port,
            "rconPort": rcon_port,
        }

    async def _existing_container_id(self, name: str) -> Optional[str]:
        try:
            attrs = await self._call(self.docker.inspect_container, name)
        except NotFound:
            return None
        return attrs.get("Id")

    async def stop(self, container_id: str) -> dict[str, Any]:
        logger.info(f"Stopping container: {container_id}")
        grace = self.config.stop_grace_period
        # grace is the SDK stop timeout, passed positionally
        await self._call(self.docker.stop_container, container_id, grace,
                         timeout=grace + self.config.runtime_timeout)
        return {"message": "Server stopped", "status": "stopped"}

    async def restart(self, container_id: str) -> dict[str, Any]:
        logger.info(f"Restarting container: {container_id}")
        grace = self.config.stop_grace_period
        await self._call(self.docker.restart_container, container_id, grace,
                         timeout=grace + self.config.runtime_timeout)
        return {"message": "Server restarted", "status": "running"}

    async def update(self, container_id: str) -> dict[str, Any]:
        """Pull the container's image again and restart it in place."""
        attrs = await self._call(self.docker.inspect_container, container_id)
        image = (attrs.get("Config") or {}).get("Image")
        if not image:
            raise NotFound(f"Container {container_id} has no image reference")
        logger.info(f"Pulling latest {image}...")
        await self._call(self.docker.pull_image, image, timeout=self.config.pull_timeout)
        logger.info(f"Image updated, restarting container {container_id}")
        await self.restart(container_id)
        return {
            "message": "Server updated successfully",
            "status": "running",
            "note": "Server will download updates on next restart",
        }

    async def delete(self, container_id: str, tenant_id: Optional[str] = None) -> dict[str, Any]:
        """Stop and remove a server, then give its ports back.

        The tenant's FTP account is never removed here; only this server's
        snapshot folder is dropped when a tenant id is given.
        """
        logger.info(f"Deleting container: {container_id}")
        attrs = await self._call(self.docker.inspect_container, container_id)
        ports = ports_from_container_attrs(attrs)
        workload = workload_of(attrs)
        state = stored_launch_state(attrs)

        if (attrs.get("State") or {}).get("Running"):
            logger.info("Stopping container before removal...")
            grace = self.config.delete_grace_period
            await self._call(self.docker.stop_container, container_id, grace,
                             timeout=grace + self.config.runtime_timeout)
        await self._call(self.docker.remove_container, container_id)
        self.allocator.release(*sorted(ports))

        if workload is not None and get_profile(workload).two_phase and state["server_key"]:
            try:
                await self._call(self.docker.remove_volume, data_volume_name(state["server_key"]))
            except VMManagerError as e:
                logger.warning(f"Could not remove data volume of {state['server_key']}: {e.message}")

        if tenant_id and self.provisioner is not None and state["port"]:
            try:
                await self.provisioner.unlink_server(username_for(tenant_id), self.config.vm_host, state["port"])
            except Exception as e:
                logger.warning(f"Could not remove FTP folder for {container_id}: {e}")

        logger.info("Container deleted")
        return {"message": "Server deleted successfully", "releasedPorts": sorted(ports)}

    async def inspect(self, container_id: str) -> dict[str, Any]:
        attrs = await self._call(self.docker.inspect_container, container_id)
        state = attrs.get("State") or {}
        host_config = attrs.get("HostConfig") or {}
        return {
            "state": state.get("Status", "unknown"),
            "running": bool(state.get("Running")),
            "createdAt": attrs.get("Created"),
            "startedAt": state.get("StartedAt"),
            "resourceLimits": {
                "memory": host_config.get("Memory", 0),
                "nanoCpus": host_config.get("NanoCpus", 0),
            },
            "portBindings": (attrs.get("NetworkSettings") or {}).get("Ports")
            or host_config.get("PortBindings")
            or {},
        }

    async def stats(self, container_id: str) -> dict[str, Any]:
        attrs = await self._call(self.docker.inspect_container, container_id)
        state = attrs.get("State") or {}
        if not state.get("Running"):
            return {
                "running": False,
                "cpuPercent": 0.0,
                "memoryUsed": 0,
                "memoryLimit": (attrs.get("HostConfig") or {}).get("Memory", 0),
                "memoryPercent": 0.0,
                "uptime": "not running",
                "uptimeSeconds": 0,
            }

        raw = await self._call(self.docker.container_stats, container_id)
        memory = raw.get("memory_stats") or {}
        used = memory.get("usage", 0) - ((memory.get("stats") or {}).get("cache", 0))
        limit = memory.get("limit", 0)
        started = parse_docker_timestamp(state.get("StartedAt"))
        uptime_seconds = int((datetime.now(timezone.utc) - started).total_seconds()) if started else 0
        networks = raw.get("networks") or {}
        return {
            "running": True,
            "cpuPercent": cpu_percent(raw),
            "memoryUsed": max(used, 0),
            "memoryLimit": limit,
            "memoryPercent": round(used / limit * 100.0, 2) if limit else 0.0,
            "uptime": format_uptime(uptime_seconds),
            "uptimeSeconds": uptime_seconds,
            "networkRx": sum(n.get("rx_bytes", 0) for n in networks.values()),
            "networkTx": sum(n.get("tx_bytes", 0) for n in networks.values()),
        }

    async def download_status(self, container_id: str) -> dict[str, Any]:
        """Provisioning progress view used by the dashboard while a server installs."""
        attrs = await self._call(self.docker.inspect_container, container_id)
        state = attrs.get("State") or {}
        running = bool(state.get("Running"))
        status = state.get("Status", "unknown")

        if phase_of(attrs) != PHASE_DOWNLOAD:
            return {
                "phase": "running" if running else "stopped",
                "percent": 100,
                "ready": running,
                "status": status,
                "running": running,
            }

        logs = await self._call(self.docker.get_container_logs, container_id, tail=PROGRESS_LOG_TAIL, timestamps=False)
        percent, finished = download_progress(logs)
        exit_code = state.get("ExitCode")
        if running:
            phase = "downloading"
        elif finished or exit_code == 0:
            phase, percent = "download_complete", 100.0
        else:
            phase = "error"
        return {
            "phase": phase,
            "percent": round(percent or 0.0, 2),
            "ready": phase == "download_complete",
            "status": status,
            "running": running,
        }

    async def system_status(self) -> dict[str, Any]:
        containers = await self._call(self.docker.list_containers, all=True)
        info = await self._call(self.docker.info)
        return {
            "status": "online",
            "containers": len(containers),
            "memory": info.get("MemTotal"),
            "cpus": info.get("NCPU"),
            "dockerVersion": info.get("ServerVersion"),
            "os": info.get("OperatingSystem"),
            "claimedPorts": len(self.allocator.claimed()),
        }

    async def list_containers(self) -> list[dict]:
        return await self._call(self.docker.list_containers, all=True)
