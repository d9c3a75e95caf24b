"""Global state management and FastAPI dependencies for the VM manager."""

from typing import Optional

from fastapi import HTTPException, status

from vm_manager.dispatcher import CommandDispatcher
from vm_manager.docker_client import DockerClient
from vm_manager.ftp import FTPProvisioner
from vm_manager.lifecycle import ContainerLifecycleManager
from vm_manager.log_relay import LogRelay
from vm_manager.models import SystemConfig
from vm_manager.ports import PortAllocator

# Global state (private)
_config: Optional[SystemConfig] = None
_docker_client: Optional[DockerClient] = None
_allocator: Optional[PortAllocator] = None
_lifecycle: Optional[ContainerLifecycleManager] = None
_log_relay: Optional[LogRelay] = None
_dispatcher: Optional[CommandDispatcher] = None
_provisioner: Optional[FTPProvisioner] = None


# State setters (for lifespan.py)
def set_config(config: Optional[SystemConfig]):
    """Set the global configuration."""
    global _config
    _config = config


def set_docker_client(client: Optional[DockerClient]):
    """Set the global Docker client."""
    global _docker_client
    _docker_client = client


def set_allocator(allocator: Optional[PortAllocator]):
    global _allocator
    _allocator = allocator


def set_lifecycle(lifecycle: Optional[ContainerLifecycleManager]):
    global _lifecycle
    _lifecycle = lifecycle


def set_log_relay(relay: Optional[LogRelay]):
    global _log_relay
    _log_relay = relay


def set_dispatcher(dispatcher: Optional[CommandDispatcher]):
    global _dispatcher
    _dispatcher = dispatcher


def set_provisioner(provisioner: Optional[FTPProvisioner]):
    global _provisioner
    _provisioner = provisioner


def peek_docker_client() -> Optional[DockerClient]:
    """Docker client or None, for shutdown paths that must not raise."""
    return _docker_client


def _unavailable(what: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{what} not available",
    )


# FastAPI Dependencies (for endpoints)
def get_config() -> SystemConfig:
    """Get loaded configuration.

    Returns:
        SystemConfig instance.

    Raises:
        HTTPException: If configuration is not loaded.
    """
    if _config is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Configuration not loaded",
        )
    return _config


def get_allocator() -> PortAllocator:
    if _allocator is None:
        raise _unavailable("Port allocator")
    return _allocator


def get_lifecycle() -> ContainerLifecycleManager:
    """Get the container lifecycle manager.

    Raises:
        HTTPException: If the Docker daemon was unreachable at startup.
    """
    if _lifecycle is None:
        raise _unavailable("Container runtime")
    return _lifecycle


def get_log_relay() -> LogRelay:
    if _log_relay is None:
        raise _unavailable("Container runtime")
    return _log_relay


def get_dispatcher() -> CommandDispatcher:
    if _dispatcher is None:
        raise _unavailable("Container runtime")
    return _dispatcher


def get_provisioner() -> FTPProvisioner:
    """Get the FTP provisioner.

    Raises:
        HTTPException: If FTP provisioning is disabled.
    """
    if _provisioner is None:
        raise _unavailable("FTP provisioning")
    return _provisioner
