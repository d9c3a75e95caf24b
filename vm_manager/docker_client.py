"""Docker client for container management."""

import logging
from typing import Any, Iterator, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

logger = logging.getLogger(__name__)


class DockerClient:
    """Client for interacting with the Docker daemon.

    All methods are blocking; async callers run them in a worker thread.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: int = 60):
        """Initialize Docker client.

        Args:
            base_url: Docker daemon URL. Defaults to the environment
                (DOCKER_HOST or the local Unix socket).
            timeout: Default request timeout in seconds.
        """
        try:
            if base_url:
                self.client = docker.DockerClient(base_url=base_url, timeout=timeout)
            else:
                self.client = docker.from_env(timeout=timeout)
            # Test connection
            self.client.ping()
            logger.info("Docker client initialized successfully")
        except DockerException as e:
            logger.error(f"Failed to initialize Docker client: {e}")
            raise

    def info(self) -> dict:
        """Return daemon-wide information (memory, CPUs, versions)."""
        return self.client.info()

    def list_containers(self, all: bool = False) -> list[dict]:
        """List containers with the fields the API reports.

        Args:
            all: If True, include stopped containers.

        Returns:
            List of container dictionaries with basic info.
        """
        try:
            containers = self.client.containers.list(all=all)
            return [
                {
                    "id": container.id,
                    "name": container.name,
                    "status": container.status,
                    "image": (container.attrs.get("Config") or {}).get("Image", ""),
                    "ports": (container.attrs.get("NetworkSettings") or {}).get("Ports") or {},
                }
                for container in containers
            ]
        except DockerException as e:
            logger.error(f"Failed to list containers: {e}")
            raise

    def list_container_attrs(self) -> list[dict]:
        """Inspect data of every container, in any lifecycle state."""
        try:
            return [container.attrs for container in self.client.containers.list(all=True)]
        except DockerException as e:
            logger.error(f"Failed to list containers: {e}")
            raise

    def get_container(self, container_id: str):
        """Get a container by name or ID.

        Raises:
            NotFound: If container not found.
        """
        try:
            return self.client.containers.get(container_id)
        except NotFound:
            logger.warning(f"Container '{container_id}' not found")
            raise
        except DockerException as e:
            logger.error(f"Failed to get container '{container_id}': {e}")
            raise

    def inspect_container(self, container_id: str) -> dict:
        """Fresh inspect data of a container."""
        container = self.get_container(container_id)
        container.reload()
        return container.attrs

    def ensure_image(self, image: str) -> None:
        """Pull an image if it is not present locally."""
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info(f"Image {image} not present, pulling")
            self.pull_image(image)

    def pull_image(self, image: str) -> None:
        """Pull the latest version of an image reference."""
        repository, _, tag = image.rpartition(":")
        if not repository or "/" in tag:
            repository, tag = image, "latest"
        try:
            logger.info(f"Pulling {repository}:{tag}")
            self.client.images.pull(repository, tag=tag)
        except DockerException as e:
            logger.error(f"Failed to pull image '{image}': {e}")
            raise

    def create_container(self, **spec: Any):
        """Create (but do not start) a container from a launch specification."""
        try:
            container = self.client.containers.create(**spec)
            logger.info(f"Container created: {container.id}")
            return container
        except DockerException as e:
            logger.error(f"Failed to create container '{spec.get('name')}': {e}")
            raise

    def start_container(self, container_id: str) -> None:
        self.get_container(container_id).start()
        logger.info(f"Started container '{container_id}'")

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container.

        Args:
            container_id: Container name or ID.
            timeout: Timeout in seconds before force killing.
        """
        self.get_container(container_id).stop(timeout=timeout)
        logger.info(f"Stopped container '{container_id}'")

    def restart_container(self, container_id: str, timeout: int = 10) -> None:
        self.get_container(container_id).restart(timeout=timeout)
        logger.info(f"Restarted container '{container_id}'")

    def remove_container(self, container_id: str, force: bool = False) -> None:
        self.get_container(container_id).remove(force=force)
        logger.info(f"Removed container '{container_id}'")

    def remove_volume(self, name: str) -> bool:
        """Remove a named volume. Returns False if it did not exist."""
        try:
            self.client.volumes.get(name).remove()
            logger.info(f"Removed volume '{name}'")
            return True
        except NotFound:
            return False

    def get_container_logs(self, container_id: str, tail: int = 100, timestamps: bool = True) -> str:
        """Get the last lines of a container's combined stdout/stderr.

        Raises:
            NotFound: If container not found.
        """
        container = self.get_container(container_id)
        logs = container.logs(tail=tail, timestamps=timestamps, stdout=True, stderr=True)
        return logs.decode("utf-8", errors="replace") if isinstance(logs, bytes) else logs

    def follow_logs(self, container_id: str, tail: int = 0):
        """Open a following log read.

        Returns:
            The SDK's cancellable stream of raw chunks; close() tears down
            the underlying connection.
        """
        container = self.get_container(container_id)
        return container.logs(stream=True, follow=True, tail=tail, stdout=True, stderr=True)

    def exec_in_container(self, container_id: str, cmd: list[str]) -> tuple[int, str]:
        """Run a command inside the container namespace.

        Returns:
            Tuple of (exit_code, combined output).
        """
        container = self.get_container(container_id)
        result = container.exec_run(cmd, stdout=True, stderr=True, demux=False)
        output = result.output or b""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return result.exit_code, output

    def export_container(self, container_id: str) -> Iterator[bytes]:
        """Tar stream of the container's complete filesystem."""
        return self.get_container(container_id).export()

    def container_stats(self, container_id: str) -> dict:
        """One stats sample, including the previous CPU sample (precpu_stats)."""
        return self.get_container(container_id).stats(stream=False)

    def close(self) -> None:
        """Close the Docker client connection."""
        if hasattr(self, "client"):
            self.client.close()
