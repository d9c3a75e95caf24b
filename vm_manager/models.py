"""Pydantic models for the VM manager API and configuration."""

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WorkloadType(str, Enum):
    """Supported game-server kinds."""

    CS2 = "CS2"
    MINECRAFT = "MINECRAFT"
    RUST = "RUST"

    def __str__(self) -> str:
        return self.value


class PortRange(BaseModel):
    """Inclusive host port range reserved for one workload type."""

    start: int = Field(..., ge=1, le=65535)
    end: int = Field(..., ge=1, le=65535)

    @model_validator(mode="after")
    def _check_order(self) -> "PortRange":
        if self.end < self.start:
            raise ValueError(f"Port range end {self.end} is below start {self.start}")
        return self

    def __contains__(self, port: int) -> bool:
        return self.start <= port <= self.end

    @property
    def size(self) -> int:
        return self.end - self.start + 1


def _default_port_ranges() -> dict[WorkloadType, PortRange]:
    return {
        WorkloadType.CS2: PortRange(start=27015, end=27115),
        WorkloadType.MINECRAFT: PortRange(start=25565, end=25665),
        WorkloadType.RUST: PortRange(start=28015, end=28115),
    }


class FTPConfig(BaseModel):
    """Settings for the per-tenant FTP account provisioner."""

    enabled: bool = Field(default=True, description="Provision FTP accounts on server creation")
    base_dir: str = Field(default="/home/gamecontrol-ftp", description="Parent of all tenant homes")
    allowlist_path: str = Field(default="/etc/vsftpd.userlist", description="FTP daemon user allow-list")
    daemon_config_path: str = Field(default="/etc/vsftpd.conf", description="FTP daemon configuration file")
    service_name: str = Field(default="vsftpd", description="systemd unit of the FTP daemon")
    port: int = Field(default=21, description="Port the FTP daemon listens on")
    login_shell: str = Field(default="/usr/sbin/nologin", description="Shell assigned to FTP accounts")
    command_timeout: float = Field(default=30.0, description="Timeout for each host command (seconds)")


class SystemConfig(BaseModel):
    """Root configuration model."""

    api_key: str = Field(default="change-this-insecure-default", description="Shared secret for x-api-key")
    vm_host: str = Field(default="localhost", description="Public host name reported to tenants")
    listen_host: str = Field(default="0.0.0.0")
    listen_port: int = Field(default=3001)
    log_level: str = Field(default="INFO")
    docker_base_url: Optional[str] = Field(
        default=None, description="Docker daemon URL; None uses the environment"
    )
    docker_timeout: int = Field(default=60, description="docker SDK request timeout (seconds)")
    runtime_timeout: float = Field(default=120.0, description="Upper bound for one runtime call (seconds)")
    pull_timeout: float = Field(default=900.0, description="Upper bound for an image pull (seconds)")
    stop_grace_period: int = Field(default=30, description="Grace period for stop/restart (seconds)")
    delete_grace_period: int = Field(default=10, description="Grace period when deleting a running server")
    dispatch_timeout: float = Field(default=5.0, description="Upper bound for one command strategy")
    management_port_offset: int = Field(default=100)
    port_ranges: dict[WorkloadType, PortRange] = Field(default_factory=_default_port_ranges)
    ftp: FTPConfig = Field(default_factory=FTPConfig)

    @model_validator(mode="after")
    def _check_ranges(self) -> "SystemConfig":
        ranges = sorted(self.port_ranges.items(), key=lambda item: item[1].start)
        for (left_type, left), (right_type, right) in zip(ranges, ranges[1:]):
            if right.start <= left.end:
                raise ValueError(
                    f"Port ranges for {left_type.value} and {right_type.value} overlap"
                )
        return self


# API Request/Response Models


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    message: Optional[str] = Field(None, description="Additional error details")


class CreateServerRequest(BaseModel):
    """Request body for POST /api/servers."""

    model_config = ConfigDict(populate_by_name=True)

    workload_type: WorkloadType = Field(
        ..., alias="workloadType", description="Workload type", examples=["MINECRAFT"]
    )
    name: str = Field(..., min_length=1, description="Display name of the server")
    config: dict[str, Any] = Field(default_factory=dict, description="Workload-specific settings")
    server_id: Optional[str] = Field(None, alias="serverId", description="External server id")
    tenant_id: Optional[str] = Field(None, alias="tenantId", description="External tenant id")

    @model_validator(mode="before")
    @classmethod
    def _accept_game_type(cls, data: Any) -> Any:
        # older dashboards send "gameType"
        if isinstance(data, dict) and "workloadType" not in data and "gameType" in data:
            data = {**data, "workloadType": data["gameType"]}
        return data


class StartServerRequest(BaseModel):
    """Optional body for POST /api/servers/{id}/start."""

    phase: Optional[Literal["download", "game"]] = Field(
        None, description="Explicit provisioning phase of the container"
    )


class DeleteServerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[str] = Field(None, alias="tenantId")


class CommandRequest(BaseModel):
    command: str = Field(..., min_length=1, description="Command text")


class FTPUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId", min_length=1)


class FTPPasswordRequest(BaseModel):
    password: Optional[str] = Field(None, min_length=8, description="New password; generated when omitted")


class FTPCleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    remaining_servers: int = Field(..., alias="remainingServers", ge=0)


class FTPLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    container_id: str = Field(..., alias="containerId")
    tenant_id: str = Field(..., alias="tenantId")
    server_name: str = Field(..., alias="serverName")
    server_host: Optional[str] = Field(None, alias="serverHost")
    server_port: int = Field(..., alias="serverPort")


class FTPUnlinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId")
    server_host: Optional[str] = Field(None, alias="serverHost")
    server_port: int = Field(..., alias="serverPort")


class FTPAccount(BaseModel):
    """Identity of a tenant's FTP account.

    ``password`` is only populated when the account was created or its
    password rotated by the call that returned it.
    """

    username: str
    password: Optional[str] = None
    home_dir: str = Field(..., serialization_alias="homeDir")
    host: str
    port: int
    existing: bool = False


class CreatedServer(BaseModel):
    container_id: str
    container_name: str
    port: int
    rcon_port: int
    host: str
    status: str
    ftp: Optional[dict[str, Any]] = None
