import asyncio
import io
import tarfile

import pytest

from tests.conftest import FakeHostAccounts
from vm_manager.errors import InvalidRequest, NotFound, ProvisioningPartialFailure
from vm_manager.ftp import FTPProvisioner, server_folder_name, username_for
from vm_manager.ftp.provisioner import PASSWORD_LENGTH, extract_allowed
from vm_manager.models import FTPConfig, WorkloadType
from vm_manager.workloads import PHASE_GAME, FTPSource, build_labels


@pytest.fixture
def ftp_config(tmp_path) -> FTPConfig:
    return FTPConfig(base_dir=str(tmp_path / "ftp"), allowlist_path=str(tmp_path / "userlist"))


@pytest.fixture
def provisioner(ftp_config, host_accounts, fake_docker) -> FTPProvisioner:
    return FTPProvisioner(ftp_config, host_accounts, fake_docker, "play.example.com", export_timeout=5)


def test_username_is_deterministic_and_truncated():
    assert username_for("6F1b-22aa-33bb-44cc") == "gc_6f1b22aa33bb"
    assert username_for("6F1b-22aa-33bb-44cc") == username_for("6f1b22aa33bb44cc")
    with pytest.raises(InvalidRequest):
        username_for("---")


def test_server_folder_name():
    assert server_folder_name("play.example.com", 25565) == "play.example.com_25565"
    assert server_folder_name("bad/host", 1) == "bad-host_1"


class TestAccounts:
    async def test_create_is_idempotent(self, provisioner, host_accounts, ftp_config):
        first = await provisioner.create_account("tenant-123")
        second = await provisioner.create_account("tenant-123")

        assert first.username == second.username == "gc_tenant123"
        assert len(first.password) == PASSWORD_LENGTH
        assert second.password is None
        assert second.existing
        assert host_accounts.allowlist == ["gc_tenant123"]
        assert host_accounts.directives["userlist_file"] == ftp_config.allowlist_path
        home = provisioner.home_dir("gc_tenant123")
        assert {p.name for p in home.iterdir()} == {"servers", "backups", "shared"}

    async def test_partial_failure_rolls_back(self, ftp_config, fake_docker):
        host = FakeHostAccounts(fail_on="append_allowlist")
        provisioner = FTPProvisioner(ftp_config, host, fake_docker, "h")

        with pytest.raises(ProvisioningPartialFailure):
            await provisioner.create_account("tenant-9")

        assert host.users == {}
        assert host.allowlist == []
        assert not provisioner.home_dir("gc_tenant9").exists()

    async def test_concurrent_creates_are_serialized(self, provisioner, host_accounts):
        results = await asyncio.gather(*(provisioner.create_account("same") for _ in range(5)))

        assert sum(1 for r in results if not r.existing) == 1
        assert host_accounts.reloads == 1

    async def test_change_password(self, provisioner, host_accounts):
        await provisioner.create_account("t1")

        generated = await provisioner.change_password("gc_t1")
        chosen = await provisioner.change_password("gc_t1", "hunter22-long")

        assert len(generated) == PASSWORD_LENGTH
        assert chosen == "hunter22-long"
        assert host_accounts.passwords["gc_t1"] == "hunter22-long"
        with pytest.raises(NotFound):
            await provisioner.change_password("gc_nobody")

    async def test_delete_is_idempotent(self, provisioner, host_accounts):
        await provisioner.create_account("t2")

        assert await provisioner.delete_account("gc_t2") is True
        assert await provisioner.delete_account("gc_t2") is False
        assert "gc_t2" not in host_accounts.allowlist
        assert not provisioner.home_dir("gc_t2").exists()

    async def test_cleanup_only_when_no_servers_remain(self, provisioner, host_accounts):
        await provisioner.create_account("t3")

        assert await provisioner.cleanup_if_no_servers("t3", 2) is False
        assert "gc_t3" in host_accounts.users
        assert await provisioner.cleanup_if_no_servers("t3", 0) is True
        assert "gc_t3" not in host_accounts.users

    async def test_account_info_lists_linked_servers(self, provisioner):
        await provisioner.create_account("t4")
        (provisioner.home_dir("gc_t4") / "servers" / "h_1").mkdir()

        info = await provisioner.account_info("t4")

        assert info["username"] == "gc_t4"
        assert info["servers"] == ["h_1"]
        assert info["port"] == 21
        with pytest.raises(NotFound):
            await provisioner.account_info("unknown")

    async def test_status_reports_daemon_state(self, provisioner, host_accounts):
        assert (await provisioner.status())["status"] == "online"
        host_accounts.running = False
        assert (await provisioner.status())["status"] == "offline"


def minecraft_container(fake_docker, files: dict[str, bytes]) -> str:
    labels = build_labels(WorkloadType.MINECRAFT, PHASE_GAME, "s", None, 25565, 25665, "s", {})
    container_id = fake_docker.add_container("gamecontrol-minecraft-s", labels=labels)
    fake_docker.filesystems[container_id] = files
    return container_id


class TestLinkServer:
    async def test_copies_allow_listed_files_only(self, provisioner, fake_docker, host_accounts):
        account = await provisioner.create_account("t5")
        container_id = minecraft_container(fake_docker, {
            "data/server.properties": b"motd=hi\n",
            "data/world/level.dat": b"\x00\x01",
            "data/secret.key": b"nope",
            "etc/passwd": b"root:x:0:0",
        })

        link = await provisioner.link_server(container_id, account.username, "World", "play.example.com", 25565)

        target = provisioner.home_dir("gc_t5") / "servers" / "play.example.com_25565"
        assert link["ftpPath"] == "servers/play.example.com_25565"
        assert link["files"] == 2
        assert (target / "server.properties").read_bytes() == b"motd=hi\n"
        assert (target / "world" / "level.dat").exists()
        assert not (target / "secret.key").exists()
        assert not (target / "etc").exists()
        assert (target, "gc_t5") in host_accounts.chowned

    async def test_empty_snapshot_is_seeded_with_placeholders(self, provisioner, fake_docker):
        account = await provisioner.create_account("t6")
        container_id = minecraft_container(fake_docker, {"opt/unrelated.txt": b"x"})

        link = await provisioner.link_server(container_id, account.username, "World", None, 25566)

        target = provisioner.home_dir("gc_t6") / "servers" / "play.example.com_25566"
        assert link["files"] == 0
        names = {p.name for p in target.iterdir()}
        assert {"server.properties", "README.txt"} <= names

    async def test_relink_replaces_previous_snapshot(self, provisioner, fake_docker):
        account = await provisioner.create_account("t7")
        container_id = minecraft_container(fake_docker, {"data/ops.json": b"[]"})
        await provisioner.link_server(container_id, account.username, "W", "h", 1)
        fake_docker.filesystems[container_id] = {"data/whitelist.json": b"[]"}

        await provisioner.link_server(container_id, account.username, "W", "h", 1)

        target = provisioner.home_dir("gc_t7") / "servers" / "h_1"
        assert {p.name for p in target.iterdir()} == {"whitelist.json"}

    async def test_unlink_removes_folder(self, provisioner, fake_docker):
        account = await provisioner.create_account("t8")
        container_id = minecraft_container(fake_docker, {"data/ops.json": b"[]"})
        await provisioner.link_server(container_id, account.username, "W", "h", 2)

        assert await provisioner.unlink_server(account.username, "h", 2) is True
        assert await provisioner.unlink_server(account.username, "h", 2) is False

    async def test_link_for_unknown_user_fails(self, provisioner, fake_docker):
        container_id = minecraft_container(fake_docker, {})
        with pytest.raises(NotFound):
            await provisioner.link_server(container_id, "gc_ghost", "W", "h", 3)


def test_extract_rejects_traversal_and_links(tmp_path):
    archive = tmp_path / "fs.tar"
    with tarfile.open(archive, "w") as tar:
        for name, content in {
            "data/../../escape.txt": b"x",
            "/data/absolute.txt": b"x",
            "data/ok.txt": b"fine",
        }.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
        link = tarfile.TarInfo("data/link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/shadow"
        tar.addfile(link)

    target = tmp_path / "out"
    target.mkdir()
    copied = extract_allowed(archive, target, [FTPSource(prefix="data")])

    assert copied == 1
    assert [p.name for p in target.rglob("*")] == ["ok.txt"]
    assert not (tmp_path / "escape.txt").exists()
