import asyncio

import pytest

from vm_manager.dispatcher import CommandDispatcher, DispatchResult, Strategy
from vm_manager.errors import NotFound
from vm_manager.models import WorkloadType
from vm_manager.workloads import PHASE_GAME, build_labels


def game_container(fake_docker, workload_type: WorkloadType) -> str:
    labels = build_labels(workload_type, PHASE_GAME, "s1", None, 1, 2, "s1", {})
    return fake_docker.add_container(
        f"gamecontrol-{workload_type.value.lower()}-s1", labels=labels, running=True
    )


def script_of(cmd: list) -> str:
    assert cmd[:2] == ["sh", "-c"]
    assert cmd[2].startswith("timeout ")
    return cmd[2]


class TestSendGameCommand:
    async def test_console_utility_with_output_is_confirmed(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.MINECRAFT)

        def handler(cid, cmd):
            if "rcon-cli" in script_of(cmd):
                return 0, "[Rcon] hello\n"
            return 1, ""

        fake_docker.exec_handler = handler
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.send_game_command(container_id, "say hello")

        assert result.confirmed and result.delivered
        assert result.method == "rcon-cli"
        assert result.output == "[Rcon] hello"
        assert len(fake_docker.exec_calls) == 1

    async def test_falls_back_to_named_pipe(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.MINECRAFT)

        def handler(cid, cmd):
            script = script_of(cmd)
            if "minecraft-console-in" in script and "rcon-cli" not in script:
                return 0, ""
            return 1, ""

        fake_docker.exec_handler = handler
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.send_game_command(container_id, "time set day")

        assert result.delivered and not result.confirmed
        assert result.method == "named-pipe"

    async def test_falls_back_to_process_stdin(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.RUST)

        def handler(cid, cmd):
            script = script_of(cmd)
            if "pgrep" in script:
                return 0, "42\n"
            if "/proc/42/fd/0" in script:
                return 0, ""
            return 1, ""

        fake_docker.exec_handler = handler
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.send_game_command(container_id, "say hi")

        assert result.method == "process-stdin"
        assert result.output == "Command sent via PID 42: say hi"
        assert not result.confirmed

    async def test_silent_console_utility_delivers_exactly_once(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.MINECRAFT)

        def handler(cid, cmd):
            script = script_of(cmd)
            if "pgrep" in script:
                return 0, "7\n"
            return 0, ""

        fake_docker.exec_handler = handler
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.send_game_command(container_id, "give steve diamond 64")

        assert result.delivered and not result.confirmed
        assert result.method == "rcon-cli"
        deliveries = [cmd for _, cmd in fake_docker.exec_calls if "give steve diamond 64" in cmd[2]]
        assert len(deliveries) == 1
        assert not any("/proc/" in cmd[2] for _, cmd in fake_docker.exec_calls)

    async def test_missing_game_process_is_not_written_to(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.RUST)

        def handler(cid, cmd):
            if "pgrep" in script_of(cmd):
                return 0, ""
            return 1, ""

        fake_docker.exec_handler = handler
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.send_game_command(container_id, "say hi")

        assert result.method == "acknowledge"
        assert not any("/proc/" in cmd[2] for _, cmd in fake_docker.exec_calls)

    async def test_all_strategies_failing_degrades_to_acknowledgment(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.CS2)
        fake_docker.exec_handler = lambda cid, cmd: (1, "")
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.send_game_command(container_id, "changelevel de_nuke")

        assert result == DispatchResult(
            delivered=False, confirmed=False, output="Command sent: changelevel de_nuke", method="acknowledge"
        )

    async def test_hanging_strategy_is_bounded(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.MINECRAFT)

        class Hang(Strategy):
            name = "hang"

            async def attempt(self, dispatcher, container_id, profile, command):
                await asyncio.sleep(60)

        dispatcher = CommandDispatcher(fake_docker, timeout=0.05, strategies=(Hang(),))

        result = await asyncio.wait_for(dispatcher.send_game_command(container_id, "say hi"), 2)

        assert result.method == "acknowledge"


class TestDispatch:
    async def test_shell_command_runs_in_container(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.MINECRAFT)
        fake_docker.exec_handler = lambda cid, cmd: (0, "server.properties\nworld\n")
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.dispatch(container_id, "ls /data")

        assert result.method == "exec"
        assert result.output == "server.properties\nworld\n"
        assert "ls /data" in fake_docker.exec_calls[0][1][2]

    async def test_console_syntax_is_routed_to_game(self, fake_docker):
        container_id = game_container(fake_docker, WorkloadType.MINECRAFT)
        fake_docker.exec_handler = lambda cid, cmd: (0, "ok") if "rcon-cli" in cmd[2] else (1, "")
        dispatcher = CommandDispatcher(fake_docker, timeout=1)

        result = await dispatcher.dispatch(container_id, "say hello")

        assert result.method == "rcon-cli"

    async def test_unknown_container_raises_not_found(self, fake_docker):
        dispatcher = CommandDispatcher(fake_docker, timeout=1)
        with pytest.raises(NotFound):
            await dispatcher.dispatch("missing", "ls")
