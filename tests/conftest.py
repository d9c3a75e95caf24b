import io
import itertools
import shutil
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Optional

import pytest
from docker.errors import APIError, NotFound

from vm_manager.errors import ProvisioningPartialFailure
from vm_manager.ftp.host import HostAccounts
from vm_manager.models import FTPConfig, SystemConfig
from vm_manager.ports import PortAllocator

ZERO_TIME = "0001-01-01T00:00:00Z"


class FakeLogStream:
    """Stands in for the SDK's CancellableStream."""

    def __init__(self, chunks):
        self._chunks = iter(chunks)
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        if self.closed:
            raise StopIteration
        return next(self._chunks)

    def close(self):
        self.closed = True


class FakeDockerClient:
    """In-memory replacement for vm_manager.docker_client.DockerClient."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.logs: dict[str, str] = {}
        self.log_chunks: dict[str, list] = {}
        self.filesystems: dict[str, dict[str, bytes]] = {}
        self.stats: dict[str, dict] = {}
        self.exec_handler: Callable[[str, list], tuple[int, str]] = lambda cid, cmd: (0, "")
        self.exec_calls: list[tuple[str, list]] = []
        self.pulled: list[str] = []
        self.removed_volumes: list[str] = []
        self.streams: list[FakeLogStream] = []
        self.fail_create = False
        self.closed = False
        self._ids = itertools.count(1)

    # helpers for tests
    def add_container(self, name: str, image: str = "busybox:latest", labels: Optional[dict] = None,
                      port_bindings: Optional[dict] = None, running: bool = False,
                      exit_code: int = 0) -> str:
        container_id = f"{next(self._ids):012x}" * 2
        self.containers[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Created": "2024-05-01T10:00:00.123456789Z",
            "Config": {"Image": image, "Labels": labels or {}},
            "HostConfig": {"PortBindings": port_bindings or {}, "Memory": 0, "NanoCpus": 0},
            "NetworkSettings": {"Ports": {}},
            "State": {
                "Status": "running" if running else "created",
                "Running": running,
                "ExitCode": exit_code,
                "StartedAt": "2024-05-01T10:00:01Z" if running else ZERO_TIME,
            },
        }
        return container_id

    def _resolve(self, container_id: str) -> dict:
        if container_id in self.containers:
            return self.containers[container_id]
        for attrs in self.containers.values():
            if attrs["Name"] == f"/{container_id}":
                return attrs
        raise NotFound(f"No such container: {container_id}")

    # DockerClient surface
    def info(self) -> dict:
        return {"MemTotal": 8 * 1024 ** 3, "NCPU": 4, "ServerVersion": "24.0.7", "OperatingSystem": "Ubuntu"}

    def list_containers(self, all: bool = False) -> list[dict]:
        return [
            {
                "id": attrs["Id"],
                "name": attrs["Name"].lstrip("/"),
                "status": attrs["State"]["Status"],
                "image": attrs["Config"]["Image"],
                "ports": attrs["NetworkSettings"]["Ports"],
            }
            for attrs in self.containers.values()
            if all or attrs["State"]["Running"]
        ]

    def list_container_attrs(self) -> list[dict]:
        return list(self.containers.values())

    def inspect_container(self, container_id: str) -> dict:
        return self._resolve(container_id)

    def ensure_image(self, image: str) -> None:
        if image not in self.pulled:
            self.pulled.append(image)

    def pull_image(self, image: str) -> None:
        self.pulled.append(image)

    def create_container(self, **spec):
        if self.fail_create:
            raise APIError("Conflict: runtime rejected the container")
        bindings = {
            container_port: [{"HostIp": "", "HostPort": str(host_port)}]
            for container_port, host_port in (spec.get("ports") or {}).items()
        }
        container_id = self.add_container(
            spec["name"], image=spec["image"], labels=spec.get("labels"), port_bindings=bindings
        )
        self.containers[container_id]["Config"]["Env"] = [
            f"{k}={v}" for k, v in (spec.get("environment") or {}).items()
        ]
        self.containers[container_id]["Spec"] = spec
        return SimpleNamespace(id=container_id, name=spec["name"])

    def start_container(self, container_id: str) -> None:
        state = self._resolve(container_id)["State"]
        state.update(Status="running", Running=True, StartedAt=datetime.now(timezone.utc).isoformat())

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        state = self._resolve(container_id)["State"]
        state.update(Status="exited", Running=False)

    def restart_container(self, container_id: str, timeout: int = 10) -> None:
        self.start_container(container_id)

    def remove_container(self, container_id: str, force: bool = False) -> None:
        attrs = self._resolve(container_id)
        if attrs["State"]["Running"] and not force:
            raise APIError("You cannot remove a running container")
        del self.containers[attrs["Id"]]

    def remove_volume(self, name: str) -> bool:
        self.removed_volumes.append(name)
        return True

    def get_container_logs(self, container_id: str, tail: int = 100, timestamps: bool = True) -> str:
        attrs = self._resolve(container_id)
        lines = self.logs.get(attrs["Id"], "").splitlines()
        return "".join(f"{line}\n" for line in lines[-tail:])

    def follow_logs(self, container_id: str, tail: int = 0):
        attrs = self._resolve(container_id)
        stream = FakeLogStream(self.log_chunks.get(attrs["Id"], []))
        self.streams.append(stream)
        return stream

    def exec_in_container(self, container_id: str, cmd: list) -> tuple[int, str]:
        self._resolve(container_id)
        self.exec_calls.append((container_id, cmd))
        return self.exec_handler(container_id, cmd)

    def export_container(self, container_id: str):
        attrs = self._resolve(container_id)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for path, content in self.filesystems.get(attrs["Id"], {}).items():
                info = tarfile.TarInfo(path)
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
        return [buffer.getvalue()]

    def container_stats(self, container_id: str) -> dict:
        return self.stats[self._resolve(container_id)["Id"]]

    def close(self) -> None:
        self.closed = True


class FakeHostAccounts(HostAccounts):
    """HostAccounts that records everything in memory."""

    def __init__(self, fail_on: Optional[str] = None):
        self.users: dict[str, str] = {}
        self.passwords: dict[str, str] = {}
        self.allowlist: list[str] = []
        self.directives: dict[str, str] = {}
        self.reloads = 0
        self.chowned: list[tuple[Path, str]] = []
        self.running = True
        self.fail_on = fail_on

    def _maybe_fail(self, step: str):
        if self.fail_on == step:
            raise ProvisioningPartialFailure(f"{step} failed")

    def user_exists(self, username):
        return username in self.users

    def create_user(self, username, home_dir):
        self._maybe_fail("create_user")
        self.users[username] = str(home_dir)

    def set_password(self, username, password):
        self._maybe_fail("set_password")
        self.passwords[username] = password

    def delete_user(self, username, home_dir):
        existed = self.users.pop(username, None) is not None
        self.passwords.pop(username, None)
        if home_dir.exists():
            shutil.rmtree(home_dir)
        return existed

    def chown(self, path, username):
        self.chowned.append((path, username))

    def append_allowlist(self, username):
        self._maybe_fail("append_allowlist")
        if username not in self.allowlist:
            self.allowlist.append(username)

    def remove_from_allowlist(self, username):
        if username in self.allowlist:
            self.allowlist.remove(username)

    def ensure_daemon_directives(self, directives):
        missing = [key for key in directives if key not in self.directives]
        for key in missing:
            self.directives[key] = directives[key]
        return missing

    def reload_daemon(self):
        self._maybe_fail("reload_daemon")
        self.reloads += 1

    def daemon_status(self):
        return self.running


@pytest.fixture
def fake_docker() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def host_accounts() -> FakeHostAccounts:
    return FakeHostAccounts()


@pytest.fixture
def system_config(tmp_path) -> SystemConfig:
    return SystemConfig(
        api_key="test-key-1234567890",
        vm_host="play.example.com",
        runtime_timeout=5,
        pull_timeout=5,
        dispatch_timeout=1,
        ftp=FTPConfig(base_dir=str(tmp_path / "ftp")),
    )


@pytest.fixture
def allocator(system_config) -> PortAllocator:
    return PortAllocator(system_config.port_ranges)
