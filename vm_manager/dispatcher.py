"""Best-effort command delivery into game-server containers.

Game servers here expose no first-class remote console to this daemon, so a
console command is pushed through a ranked list of strategies. Each strategy
reports whether the text was delivered and whether execution was confirmed
by output. The dispatcher stops at the first strategy that delivers, so a
command reaches the game at most once. Nothing here guarantees that a command ran.
"""

import asyncio
import logging
import shlex
from typing import Optional

from pydantic import BaseModel

from vm_manager.docker_client import DockerClient
from vm_manager.errors import BestEffortDispatchFailure, VMManagerError
from vm_manager.models import WorkloadType
from vm_manager.runtime import run_blocking
from vm_manager.workloads import WorkloadProfile, get_profile, is_console_command, workload_of

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    """Outcome of one delivery attempt."""

    delivered: bool
    confirmed: bool
    output: str
    method: str


class Strategy:
    """One way of getting a command to the game process."""

    name = "strategy"

    async def attempt(self, dispatcher: "CommandDispatcher", container_id: str,
                      profile: WorkloadProfile, command: str) -> DispatchResult:
        raise NotImplementedError


class ConsoleUtilityStrategy(Strategy):
    """Remote-console utility shipped in the image (rcon-cli and friends)."""

    name = "console-utility"

    async def attempt(self, dispatcher, container_id, profile, command):
        for utility in profile.console_utilities:
            exit_code, output = await dispatcher.run_in_container(
                container_id,
                f"command -v {shlex.quote(utility)} >/dev/null 2>&1 && {shlex.quote(utility)} {shlex.quote(command)}",
            )
            if exit_code == 0:
                return DispatchResult(
                    delivered=True, confirmed=bool(output.strip()), output=output.strip(), method=utility
                )
        raise BestEffortDispatchFailure("no console utility available")


class NamedPipeStrategy(Strategy):
    """Well-known named pipe the server process reads console input from."""

    name = "named-pipe"

    async def attempt(self, dispatcher, container_id, profile, command):
        line = shlex.quote(command.rstrip("\n"))
        for pipe in profile.console_pipes:
            exit_code, _ = await dispatcher.run_in_container(
                container_id, f"[ -p {shlex.quote(pipe)} ] && echo {line} > {shlex.quote(pipe)}"
            )
            if exit_code == 0:
                return DispatchResult(
                    delivered=True, confirmed=False,
                    output=f"Command sent via console pipe: {command}", method=self.name,
                )
        raise BestEffortDispatchFailure("no console pipe found")


class ProcessStdinStrategy(Strategy):
    """Write to the standard input of the foreground game process."""

    name = "process-stdin"

    async def attempt(self, dispatcher, container_id, profile, command):
        # match on process name only so the probing shell never matches itself
        pattern = profile.process_pattern or "."
        exit_code, output = await dispatcher.run_in_container(
            container_id,
            f"pgrep -o {shlex.quote(pattern)} 2>/dev/null || "
            f"ps -eo pid,comm | awk '$2 ~ /{pattern}/ {{print $1; exit}}'",
        )
        pid = output.strip().splitlines()[0] if output.strip() else ""
        if exit_code != 0 or not pid.isdigit():
            raise BestEffortDispatchFailure(f"no process matching {pattern}")
        exit_code, _ = await dispatcher.run_in_container(
            container_id, f"echo {shlex.quote(command.rstrip(chr(10)))} > /proc/{pid}/fd/0"
        )
        if exit_code != 0:
            raise BestEffortDispatchFailure(f"could not write to stdin of pid {pid}")
        return DispatchResult(
            delivered=True, confirmed=False,
            output=f"Command sent via PID {pid}: {command}", method=self.name,
        )


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    ConsoleUtilityStrategy(),
    NamedPipeStrategy(),
    ProcessStdinStrategy(),
)


class CommandDispatcher:
    """Runs shell commands in containers and delivers game-console commands."""

    def __init__(
        self,
        docker_client: DockerClient,
        timeout: float = 5.0,
        strategies: tuple[Strategy, ...] = DEFAULT_STRATEGIES,
    ):
        self.docker = docker_client
        self.timeout = timeout
        self.strategies = strategies

    async def run_in_container(self, container_id: str, script: str) -> tuple[int, str]:
        """Run a shell snippet in the container, bounded in time on both sides."""
        seconds = max(int(self.timeout), 1)
        cmd = ["sh", "-c", f"timeout {seconds} sh -c {shlex.quote(script)}"]
        return await run_blocking(
            self.docker.exec_in_container, container_id, cmd, timeout=self.timeout + 1
        )

    async def exec(self, container_id: str, command: str) -> str:
        """Run a generic shell command and return its captured output."""
        exit_code, output = await self.run_in_container(container_id, command)
        logger.info(f"Executed command in {container_id} (exit code {exit_code})")
        return output

    async def workload(self, container_id: str) -> Optional[WorkloadType]:
        attrs = await run_blocking(self.docker.inspect_container, container_id, timeout=self.timeout + 1)
        return workload_of(attrs)

    async def send_game_command(self, container_id: str, command: str,
                                workload_type: Optional[WorkloadType] = None) -> DispatchResult:
        """Deliver a console command through the ranked strategies.

        Never raises for delivery problems; the lowest-confidence result is an
        acknowledgment without confirmation.
        """
        if workload_type is None:
            workload_type = await self.workload(container_id)
        if workload_type is None:
            return self._acknowledge(command)
        profile = get_profile(workload_type)

        for strategy in self.strategies:
            try:
                result = await asyncio.wait_for(
                    strategy.attempt(self, container_id, profile, command), self.timeout * 2
                )
            except asyncio.TimeoutError:
                logger.warning(f"{strategy.name} timed out for {container_id}")
                continue
            except VMManagerError as e:
                logger.debug(f"{strategy.name} failed for {container_id}: {e.message}")
                continue
            logger.info(f"Command delivered to {container_id} via {result.method} (confirmed={result.confirmed})")
            if result.delivered:
                return result
        return self._acknowledge(command)

    async def dispatch(self, container_id: str, command: str) -> DispatchResult:
        """Route a command: console syntax goes to the game, anything else to a shell."""
        workload_type = await self.workload(container_id)
        if is_console_command(workload_type, command):
            return await self.send_game_command(container_id, command, workload_type)
        try:
            output = await self.exec(container_id, command)
        except VMManagerError as e:
            logger.warning(f"Shell command failed in {container_id}: {e.message}")
            return DispatchResult(delivered=False, confirmed=False, output=f"Error: {e.message}", method="exec")
        return DispatchResult(delivered=True, confirmed=True, output=output, method="exec")

    @staticmethod
    def _acknowledge(command: str) -> DispatchResult:
        return DispatchResult(delivered=False, confirmed=False, output=f"Command sent: {command}", method="acknowledge")
