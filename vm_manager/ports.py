"""Host port allocation for game-server containers."""

import logging
import threading
from typing import Iterable

from vm_manager.errors import CapacityExhausted, InvalidRequest
from vm_manager.models import PortRange, WorkloadType

logger = logging.getLogger(__name__)

# Labels that record reserved ports on containers that have no bindings yet
PORT_LABELS = ("gamecontrol.port", "gamecontrol.rcon_port")


def ports_from_container_attrs(attrs: dict) -> set[int]:
    """Extract every host port a container holds or has reserved.

    Looks at configured bindings, live bindings and the daemon's own labels.
    """
    ports: set[int] = set()

    host_config = attrs.get("HostConfig") or {}
    network_settings = attrs.get("NetworkSettings") or {}
    for bindings in (host_config.get("PortBindings") or {}, network_settings.get("Ports") or {}):
        for mappings in bindings.values():
            for mapping in mappings or []:
                host_port = str((mapping or {}).get("HostPort") or "")
                if host_port.isdigit():
                    ports.add(int(host_port))

    labels = (attrs.get("Config") or {}).get("Labels") or {}
    for label in PORT_LABELS:
        value = str(labels.get(label) or "")
        if value.isdigit():
            ports.add(int(value))

    return ports


class PortAllocator:
    """Assign and reclaim host ports per workload type.

    The claimed set lives in memory only and is rebuilt from the container
    runtime by reconcile(). Search and claim happen under one lock with no
    suspension point in between.
    """

    def __init__(self, ranges: dict[WorkloadType, PortRange]):
        self._ranges = dict(ranges)
        self._claimed: set[int] = set()
        self._lock = threading.Lock()

    @property
    def ranges(self) -> dict[WorkloadType, PortRange]:
        return dict(self._ranges)

    def claimed(self) -> set[int]:
        with self._lock:
            return set(self._claimed)

    def is_claimed(self, port: int) -> bool:
        with self._lock:
            return port in self._claimed

    def _range_for(self, workload_type: WorkloadType) -> PortRange:
        try:
            return self._ranges[WorkloadType(workload_type)]
        except (KeyError, ValueError):
            raise InvalidRequest(f"Unsupported workload type: {workload_type}")

    def allocate(self, workload_type: WorkloadType) -> int:
        """Claim the lowest free port in the workload's range."""
        port_range = self._range_for(workload_type)
        with self._lock:
            for port in range(port_range.start, port_range.end + 1):
                if port not in self._claimed:
                    self._claimed.add(port)
                    logger.info(f"Allocated port {port} for {workload_type}")
                    return port
        logger.warning(
            f"Port allocation exhausted for {workload_type}: no free ports in "
            f"{port_range.start}-{port_range.end}"
        )
        raise CapacityExhausted(f"No available ports for {workload_type}")

    def allocate_pair(self, workload_type: WorkloadType, offset: int) -> tuple[int, int]:
        """Claim a game port and its management port (game port + offset) together."""
        port_range = self._range_for(workload_type)
        with self._lock:
            for port in range(port_range.start, port_range.end + 1):
                secondary = port + offset
                if port in self._claimed or secondary in self._claimed or secondary > 65535:
                    continue
                self._claimed.update((port, secondary))
                logger.info(f"Allocated ports {port}/{secondary} for {workload_type}")
                return port, secondary
        logger.warning(f"Port pair allocation exhausted for {workload_type}")
        raise CapacityExhausted(f"No available ports for {workload_type}")

    def claim(self, ports: Iterable[int]) -> None:
        with self._lock:
            self._claimed.update(ports)

    def release(self, *ports: int) -> None:
        """Return ports to the pool. Releasing a free port is a no-op."""
        with self._lock:
            for port in ports:
                if port in self._claimed:
                    self._claimed.discard(port)
                    logger.info(f"Released port {port}")

    def reconcile(self, containers_attrs: Iterable[dict]) -> set[int]:
        """Pre-claim every host port found on the given containers.

        Args:
            containers_attrs: Inspect data of all containers known to the
                runtime, in any lifecycle state.

        Returns:
            The set of ports claimed by this call.
        """
        found: set[int] = set()
        for attrs in containers_attrs:
            found |= ports_from_container_attrs(attrs)
        with self._lock:
            self._claimed |= found
            total = len(self._claimed)
        for port in sorted(found):
            logger.debug(f"Port {port} is in use")
        logger.info(f"Loaded {len(found)} used ports ({total} claimed)")
        return found
