"""Per-tenant FTP account provisioning."""

from vm_manager.ftp.host import HostAccounts, ShellHostAccounts
from vm_manager.ftp.provisioner import FTPProvisioner, server_folder_name, username_for

__all__ = [
    "FTPProvisioner",
    "HostAccounts",
    "ShellHostAccounts",
    "server_folder_name",
    "username_for",
]
