"""Lifespan management for FastAPI app."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from vm_manager.config import load_config
from vm_manager.dispatcher import CommandDispatcher
from vm_manager.docker_client import DockerClient
from vm_manager.ftp import FTPProvisioner, ShellHostAccounts
from vm_manager.lifecycle import ContainerLifecycleManager
from vm_manager.log_relay import LogRelay
from vm_manager.ports import PortAllocator
from vm_manager.state import (
    peek_docker_client,
    set_allocator,
    set_config,
    set_dispatcher,
    set_docker_client,
    set_lifecycle,
    set_log_relay,
    set_provisioner,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for FastAPI app.

    Loads configuration, connects to Docker, rebuilds the claimed port set
    from the runtime and wires the components on startup. Cleans up on
    shutdown.
    """
    # Startup
    logger.info("Starting VM manager...")
    try:
        config = load_config()
        set_config(config)

        allocator = PortAllocator(config.port_ranges)
        set_allocator(allocator)

        # Initialize Docker client (optional - may fail if socket not available)
        try:
            docker_client = DockerClient(base_url=config.docker_base_url, timeout=config.docker_timeout)
            set_docker_client(docker_client)
        except Exception as e:
            logger.warning(f"Docker client initialization failed (container operations will be unavailable): {e}")
            docker_client = None
            set_docker_client(None)

        provisioner = None
        if config.ftp.enabled:
            provisioner = FTPProvisioner(
                config.ftp, ShellHostAccounts(config.ftp), docker_client, config.vm_host
            )
        set_provisioner(provisioner)

        if docker_client is not None:
            lifecycle = ContainerLifecycleManager(config, docker_client, allocator, provisioner)
            claimed = await lifecycle.reconcile()
            logger.info(f"Reconciled {len(claimed)} host ports from existing containers")
            set_lifecycle(lifecycle)
            set_log_relay(LogRelay(docker_client, timeout=config.runtime_timeout))
            set_dispatcher(CommandDispatcher(docker_client, timeout=config.dispatch_timeout))

        logger.info(f"VM manager initialized, public host {config.vm_host}")
    except Exception as e:
        logger.error(f"Failed to initialize VM manager: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down VM manager...")
    docker_client = peek_docker_client()
    if docker_client:
        docker_client.close()

    for setter in (set_lifecycle, set_log_relay, set_dispatcher, set_provisioner,
                   set_allocator, set_docker_client, set_config):
        setter(None)
    logger.info("VM manager shut down")
