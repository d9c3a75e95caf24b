"""Host-level account and FTP daemon operations.

HostAccounts is the narrow interface the provisioner depends on;
ShellHostAccounts implements it with the system's account tools and
systemd. Every command is an argument vector bounded by a timeout.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from vm_manager.errors import ProvisioningPartialFailure
from vm_manager.models import FTPConfig

logger = logging.getLogger(__name__)

# userdel exit status for "user does not exist"
USERDEL_NO_SUCH_USER = 6


class HostAccounts:
    """Operations on OS accounts and the FTP daemon."""

    def user_exists(self, username: str) -> bool:
        raise NotImplementedError

    def create_user(self, username: str, home_dir: Path) -> None:
        raise NotImplementedError

    def set_password(self, username: str, password: str) -> None:
        raise NotImplementedError

    def delete_user(self, username: str, home_dir: Path) -> bool:
        raise NotImplementedError

    def chown(self, path: Path, username: str) -> None:
        raise NotImplementedError

    def append_allowlist(self, username: str) -> None:
        raise NotImplementedError

    def remove_from_allowlist(self, username: str) -> None:
        raise NotImplementedError

    def ensure_daemon_directives(self, directives: dict[str, str]) -> list[str]:
        raise NotImplementedError

    def reload_daemon(self) -> None:
        raise NotImplementedError

    def daemon_status(self) -> bool:
        raise NotImplementedError


class ShellHostAccounts(HostAccounts):
    """HostAccounts backed by useradd/chpasswd/userdel/chown and systemctl."""

    def __init__(self, config: FTPConfig):
        self.config = config
        self.allowlist_path = Path(config.allowlist_path)
        self.daemon_config_path = Path(config.daemon_config_path)

    def _run(self, args: list[str], input: Optional[str] = None,
             check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                args,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.config.command_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Timeout running {args[0]}")
            raise ProvisioningPartialFailure(f"{args[0]} timed out")
        except FileNotFoundError:
            logger.error(f"Command not found: {args[0]}")
            raise ProvisioningPartialFailure(f"{args[0]} is not installed")

        if check and result.returncode != 0:
            logger.error(f"{args[0]} failed ({result.returncode}): {result.stderr.strip()}")
            raise ProvisioningPartialFailure(
                f"{args[0]} failed: {result.stderr.strip() or result.returncode}"
            )
        return result

    def user_exists(self, username: str) -> bool:
        return self._run(["id", "-u", username], check=False).returncode == 0

    def create_user(self, username: str, home_dir: Path) -> None:
        self._run(["useradd", "-d", str(home_dir), "-M", "-s", self.config.login_shell, username])
        logger.info(f"Created OS account {username}")

    def set_password(self, username: str, password: str) -> None:
        # chpasswd reads from stdin so the password never appears in argv
        self._run(["chpasswd"], input=f"{username}:{password}\n")

    def delete_user(self, username: str, home_dir: Path) -> bool:
        result = self._run(["userdel", "-r", username], check=False)
        if result.returncode not in (0, USERDEL_NO_SUCH_USER):
            # userdel -r exits 12 when the home tree could not be removed
            logger.warning(f"userdel {username} exited {result.returncode}: {result.stderr.strip()}")
        if home_dir.exists():
            shutil.rmtree(home_dir, ignore_errors=True)
        return result.returncode != USERDEL_NO_SUCH_USER

    def chown(self, path: Path, username: str) -> None:
        self._run(["chown", "-R", f"{username}:{username}", str(path)])

    def _read_lines(self, path: Path) -> list[str]:
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    def append_allowlist(self, username: str) -> None:
        lines = self._read_lines(self.allowlist_path)
        if username in (line.strip() for line in lines):
            return
        self.allowlist_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.allowlist_path, "a", encoding="utf-8") as f:
            f.write(f"{username}\n")
        logger.info(f"Added {username} to {self.allowlist_path}")

    def remove_from_allowlist(self, username: str) -> None:
        lines = self._read_lines(self.allowlist_path)
        kept = [line for line in lines if line.strip() != username]
        if len(kept) != len(lines):
            self.allowlist_path.write_text("".join(f"{line}\n" for line in kept), encoding="utf-8")
            logger.info(f"Removed {username} from {self.allowlist_path}")

    def ensure_daemon_directives(self, directives: dict[str, str]) -> list[str]:
        """Append directives whose key is not yet set. Returns the keys added."""
        lines = self._read_lines(self.daemon_config_path)
        present = {line.split("=", 1)[0].strip() for line in lines if "=" in line and not line.startswith("#")}
        missing = [key for key in directives if key not in present]
        if missing:
            with open(self.daemon_config_path, "a", encoding="utf-8") as f:
                for key in missing:
                    f.write(f"{key}={directives[key]}\n")
            logger.info(f"Appended {', '.join(missing)} to {self.daemon_config_path}")
        return missing

    def reload_daemon(self) -> None:
        self._run(["systemctl", "restart", self.config.service_name])
        logger.info(f"Restarted {self.config.service_name}")

    def daemon_status(self) -> bool:
        result = self._run(["systemctl", "is-active", self.config.service_name], check=False)
        return result.returncode == 0
