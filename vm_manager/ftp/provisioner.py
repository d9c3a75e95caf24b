"""Per-tenant FTP accounts and server file snapshots."""

import asyncio
import logging
import posixpath
import re
import secrets
import shutil
import string
import tarfile
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional

from vm_manager.docker_client import DockerClient
from vm_manager.errors import InvalidRequest, NotFound, ProvisioningPartialFailure, VMManagerError
from vm_manager.ftp.host import HostAccounts
from vm_manager.models import FTPAccount, FTPConfig
from vm_manager.runtime import run_blocking
from vm_manager.workloads import FTPSource, get_profile, workload_of

logger = logging.getLogger(__name__)

USERNAME_PREFIX = "gc_"
USERNAME_ID_LENGTH = 12
PASSWORD_LENGTH = 20
HOME_SUBDIRS = ("servers", "backups", "shared")
GENERIC_PLACEHOLDERS = {
    "README.txt": "This folder is a point-in-time copy of your server's files.\n",
}

_PASSWORD_ALPHABET = string.ascii_letters + string.digits
_UNSAFE_FOLDER_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def username_for(tenant_id: str) -> str:
    """Deterministic account name: fixed prefix plus truncated tenant id."""
    cleaned = re.sub(r"[^a-z0-9]", "", tenant_id.lower())
    if not cleaned:
        raise InvalidRequest(f"Tenant id '{tenant_id}' has no usable characters")
    return f"{USERNAME_PREFIX}{cleaned[:USERNAME_ID_LENGTH]}"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def server_folder_name(host: str, port: int) -> str:
    """Stable folder name for a server: host_port."""
    return _UNSAFE_FOLDER_CHARS.sub("-", f"{host}_{port}")


def daemon_directives(config: FTPConfig) -> dict[str, str]:
    return {
        "chroot_local_user": "YES",
        "allow_writeable_chroot": "YES",
        "userlist_enable": "YES",
        "userlist_file": config.allowlist_path,
        "userlist_deny": "NO",
    }


def _member_path(member: tarfile.TarInfo) -> Optional[str]:
    name = member.name.replace("\\", "/")
    if name.startswith("/"):
        return None
    normalized = posixpath.normpath(name)
    if normalized in (".", "") or normalized == ".." or normalized.startswith("../"):
        return None
    return normalized


def _destination(rel_member: str, sources: Iterable[FTPSource]) -> Optional[str]:
    """Target-relative path for a member, or None if no source allows it."""
    for source in sources:
        prefix = source.prefix.strip("/")
        if not rel_member.startswith(prefix + "/"):
            continue
        rel = rel_member[len(prefix) + 1:]
        if source.include is not None and rel.split("/", 1)[0] not in source.include:
            continue
        return posixpath.join(source.target, rel) if source.target else rel
    return None


def extract_allowed(archive: Path, target: Path, sources: list[FTPSource]) -> int:
    """Copy allow-listed regular files and directories out of a filesystem tar.

    Returns:
        Number of files written.
    """
    copied = 0
    with tarfile.open(archive, mode="r:*") as tar:
        for member in tar:
            rel_member = _member_path(member)
            if rel_member is None:
                continue
            dest_rel = _destination(rel_member, sources)
            if dest_rel is None:
                continue
            dest = target / dest_rel
            if member.isdir():
                dest.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                source = tar.extractfile(member)
                if source is None:
                    continue
                dest.parent.mkdir(parents=True, exist_ok=True)
                with source, open(dest, "wb") as out:
                    shutil.copyfileobj(source, out)
                copied += 1
    return copied


def seed_placeholders(target: Path, placeholders: dict[str, str]) -> None:
    for rel, content in placeholders.items():
        path = target / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(content, encoding="utf-8")


def _set_modes(root: Path) -> None:
    root.chmod(0o755)
    for path in root.rglob("*"):
        path.chmod(0o755 if path.is_dir() else 0o644)


class FTPProvisioner:
    """Creates chrooted FTP accounts and snapshots container files into them.

    All mutating operations are serialized: they edit shared host files
    (the daemon allow-list and configuration).
    """

    def __init__(self, config: FTPConfig, host: HostAccounts, docker_client: Optional[DockerClient],
                 public_host: str, export_timeout: float = 600.0):
        self.config = config
        self.host = host
        self.docker = docker_client
        self.public_host = public_host
        self.export_timeout = export_timeout
        self.base_dir = Path(config.base_dir)
        self._lock = asyncio.Lock()

    def home_dir(self, username: str) -> Path:
        return self.base_dir / username

    def _identity(self, username: str, password: Optional[str] = None, existing: bool = False) -> FTPAccount:
        return FTPAccount(
            username=username,
            password=password,
            home_dir=str(self.home_dir(username)),
            host=self.public_host,
            port=self.config.port,
            existing=existing,
        )

    async def create_account(self, tenant_id: str) -> FTPAccount:
        """Create the tenant's account, or return the existing identity.

        The plaintext password is only present on the call that created it.
        """
        username = username_for(tenant_id)
        async with self._lock:
            return await asyncio.to_thread(self._create_account, username)

    def _create_account(self, username: str) -> FTPAccount:
        if self.host.user_exists(username):
            logger.info(f"FTP user {username} already exists")
            return self._identity(username, existing=True)

        home = self.home_dir(username)
        logger.info(f"Creating FTP user: {username}")
        for sub in HOME_SUBDIRS:
            (home / sub).mkdir(parents=True, exist_ok=True)
        home.chmod(0o755)

        password = generate_password()
        created = False
        try:
            self.host.create_user(username, home)
            created = True
            self.host.set_password(username, password)
            self.host.chown(home, username)
            self.host.append_allowlist(username)
            self.host.ensure_daemon_directives(daemon_directives(self.config))
            self.host.reload_daemon()
        except VMManagerError as e:
            logger.error(f"Error creating FTP user {username}: {e.message}")
            self._rollback_account(username, home, created)
            raise ProvisioningPartialFailure(f"Failed to create FTP user: {e.message}")

        logger.info(f"FTP user created: {username}")
        return self._identity(username, password=password)

    def _rollback_account(self, username: str, home: Path, created: bool) -> None:
        try:
            self.host.remove_from_allowlist(username)
            if created:
                self.host.delete_user(username, home)
        except VMManagerError as e:
            logger.error(f"Rollback of FTP user {username} incomplete: {e.message}")
        shutil.rmtree(home, ignore_errors=True)

    async def delete_account(self, username: str) -> bool:
        """Remove the account and its home tree. Returns False if it was already gone."""
        async with self._lock:
            return await asyncio.to_thread(self._delete_account, username)

    def _delete_account(self, username: str) -> bool:
        logger.info(f"Deleting FTP user: {username}")
        self.host.remove_from_allowlist(username)
        existed = self.host.delete_user(username, self.home_dir(username))
        self.host.reload_daemon()
        logger.info(f"FTP user deleted: {username}" if existed else f"FTP user {username} was already gone")
        return existed

    async def change_password(self, username: str, new_password: Optional[str] = None) -> str:
        async with self._lock:
            if not await asyncio.to_thread(self.host.user_exists, username):
                raise NotFound(f"FTP user {username} not found")
            password = new_password or generate_password()
            await asyncio.to_thread(self.host.set_password, username, password)
        logger.info(f"Password changed for: {username}")
        return password

    async def account_info(self, tenant_id: str) -> dict[str, Any]:
        username = username_for(tenant_id)
        if not await asyncio.to_thread(self.host.user_exists, username):
            raise NotFound(f"No FTP account for tenant {tenant_id}")
        servers_dir = self.home_dir(username) / "servers"
        servers = sorted(
            p.name for p in servers_dir.iterdir() if not p.name.startswith(".")
        ) if servers_dir.is_dir() else []
        identity = self._identity(username)
        return {
            "username": username,
            "homeDir": identity.home_dir,
            "servers": servers,
            "host": identity.host,
            "port": identity.port,
        }

    async def link_server(self, container_id: str, username: str, server_name: str,
                          host: Optional[str], port: int) -> dict[str, Any]:
        """Snapshot a container's allow-listed files into the tenant's home.

        This is a point-in-time copy; call again to refresh it.
        """
        if self.docker is None:
            raise ProvisioningPartialFailure("Container runtime not available")
        folder = server_folder_name(host or self.public_host, port)
        target = self.home_dir(username) / "servers" / folder

        async with self._lock:
            if not await asyncio.to_thread(self.host.user_exists, username):
                raise NotFound(f"FTP user {username} not found")
            attrs = await run_blocking(self.docker.inspect_container, container_id, timeout=self.export_timeout)
            workload = workload_of(attrs)
            if workload is not None:
                profile = get_profile(workload)
                sources, placeholders = profile.ftp_sources, profile.ftp_placeholders
            else:
                sources, placeholders = [], GENERIC_PLACEHOLDERS

            logger.info(f"Linking server {server_name} to FTP for {username}")
            with tempfile.TemporaryDirectory(prefix="gamecontrol-export-") as staging:
                archive = Path(staging) / "rootfs.tar"
                chunks = await run_blocking(self.docker.export_container, container_id, timeout=self.export_timeout)
                await asyncio.wait_for(
                    asyncio.to_thread(self._write_archive, chunks, archive), self.export_timeout
                )
                copied = await asyncio.to_thread(
                    self._materialize, archive, Path(staging) / "files", target, sources, placeholders
                )
            await asyncio.to_thread(self.host.chown, target, username)

        logger.info(f"Server linked: {server_name} -> {target} ({copied} files)")
        return {"ftpPath": f"servers/{folder}", "fullPath": str(target), "files": copied}

    @staticmethod
    def _write_archive(chunks: Iterable[bytes], archive: Path) -> None:
        with open(archive, "wb") as f:
            for chunk in chunks:
                f.write(chunk)

    @staticmethod
    def _materialize(archive: Path, extracted: Path, target: Path,
                     sources: list[FTPSource], placeholders: dict[str, str]) -> int:
        extracted.mkdir(parents=True, exist_ok=True)
        copied = extract_allowed(archive, extracted, sources) if sources else 0
        if target.exists():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(extracted, target)
        if copied == 0:
            seed_placeholders(target, placeholders)
        _set_modes(target)
        return copied

    async def unlink_server(self, username: str, host: Optional[str], port: int) -> bool:
        folder = self.home_dir(username) / "servers" / server_folder_name(host or self.public_host, port)
        async with self._lock:
            if not folder.exists():
                return False
            await asyncio.to_thread(shutil.rmtree, folder)
        logger.info(f"Server unlinked: {folder}")
        return True

    async def cleanup_if_no_servers(self, tenant_id: str, remaining_servers: int) -> bool:
        """Delete the tenant's account only when the caller reports zero servers."""
        if remaining_servers != 0:
            return False
        return await self.delete_account(username_for(tenant_id))

    async def status(self) -> dict[str, str]:
        if await asyncio.to_thread(self.host.daemon_status):
            return {"status": "online", "message": "FTP server is running"}
        return {"status": "offline", "message": "FTP server is not running"}
