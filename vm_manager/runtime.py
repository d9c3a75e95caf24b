"""Bounded, non-blocking calls into the container runtime."""

import asyncio
import functools
import logging
from typing import Any, Callable, TypeVar

from docker.errors import DockerException, NotFound as DockerNotFound

from vm_manager.errors import ContainerRuntimeError, NotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _docker_message(error: DockerException) -> str:
    explanation = getattr(error, "explanation", None)
    return str(explanation or error)


async def run_blocking(func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run a blocking runtime call in a worker thread under a timeout.

    Docker SDK errors are translated into the daemon's error taxonomy.

    Raises:
        NotFound: The runtime does not know the container, image or volume.
        ContainerRuntimeError: The runtime failed the call or it timed out.
    """
    name = getattr(func, "__name__", "runtime call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)), timeout
        )
    except asyncio.TimeoutError:
        logger.error(f"{name} timed out after {timeout}s")
        raise ContainerRuntimeError(f"{name} timed out after {timeout}s")
    except DockerNotFound as e:
        raise NotFound(_docker_message(e))
    except DockerException as e:
        raise ContainerRuntimeError(_docker_message(e))
