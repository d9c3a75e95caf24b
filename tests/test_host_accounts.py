import subprocess
from unittest import mock

import pytest

from vm_manager.errors import ProvisioningPartialFailure
from vm_manager.ftp.host import ShellHostAccounts
from vm_manager.models import FTPConfig


@pytest.fixture
def accounts(tmp_path) -> ShellHostAccounts:
    config = FTPConfig(
        allowlist_path=str(tmp_path / "vsftpd.userlist"),
        daemon_config_path=str(tmp_path / "vsftpd.conf"),
        command_timeout=3,
    )
    return ShellHostAccounts(config)


def completed(returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr=stderr)


def test_create_user_uses_argument_vector(accounts, tmp_path):
    with mock.patch("vm_manager.ftp.host.subprocess.run", return_value=completed()) as run:
        accounts.create_user("gc_abc", tmp_path / "gc_abc")

    args, kwargs = run.call_args
    assert args[0] == ["useradd", "-d", str(tmp_path / "gc_abc"), "-M", "-s", "/usr/sbin/nologin", "gc_abc"]
    assert kwargs["timeout"] == 3


def test_password_is_passed_on_stdin(accounts):
    with mock.patch("vm_manager.ftp.host.subprocess.run", return_value=completed()) as run:
        accounts.set_password("gc_abc", "s3cret")

    args, kwargs = run.call_args
    assert args[0] == ["chpasswd"]
    assert kwargs["input"] == "gc_abc:s3cret\n"


def test_failed_command_raises(accounts):
    with mock.patch("vm_manager.ftp.host.subprocess.run", return_value=completed(1, "useradd: user exists")):
        with pytest.raises(ProvisioningPartialFailure, match="user exists"):
            accounts.create_user("gc_abc", accounts.allowlist_path.parent)


def test_timeout_raises(accounts):
    with mock.patch(
        "vm_manager.ftp.host.subprocess.run", side_effect=subprocess.TimeoutExpired(["systemctl"], 3)
    ):
        with pytest.raises(ProvisioningPartialFailure, match="timed out"):
            accounts.reload_daemon()


def test_delete_missing_user_reports_false(accounts, tmp_path):
    with mock.patch("vm_manager.ftp.host.subprocess.run", return_value=completed(6)):
        assert accounts.delete_user("gc_gone", tmp_path / "gc_gone") is False


def test_allowlist_edits_are_idempotent(accounts):
    accounts.append_allowlist("gc_a")
    accounts.append_allowlist("gc_b")
    accounts.append_allowlist("gc_a")
    assert accounts.allowlist_path.read_text().splitlines() == ["gc_a", "gc_b"]

    accounts.remove_from_allowlist("gc_a")
    accounts.remove_from_allowlist("gc_a")
    assert accounts.allowlist_path.read_text().splitlines() == ["gc_b"]


def test_daemon_directives_appended_once(accounts):
    accounts.daemon_config_path.write_text("listen=YES\nchroot_local_user=NO\n")

    added = accounts.ensure_daemon_directives({"chroot_local_user": "YES", "userlist_enable": "YES"})
    again = accounts.ensure_daemon_directives({"chroot_local_user": "YES", "userlist_enable": "YES"})

    assert added == ["userlist_enable"]
    assert again == []
    assert accounts.daemon_config_path.read_text().count("userlist_enable=YES") == 1
