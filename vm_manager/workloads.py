"""Workload catalogue: images, launch specifications and per-type heuristics.

Each supported game-server kind is described by a WorkloadProfile. The
lifecycle manager, log relay, command dispatcher and FTP provisioner all
read their type-specific knowledge from here.
"""

import json
import re
import time
from typing import Any, Optional

from pydantic import BaseModel, Field

from vm_manager.models import WorkloadType

NAME_PREFIX = "gamecontrol"

LABEL_MANAGED = "gamecontrol.managed"
LABEL_WORKLOAD = "gamecontrol.workload"
LABEL_PHASE = "gamecontrol.phase"
LABEL_SERVER_ID = "gamecontrol.server_id"
LABEL_TENANT_ID = "gamecontrol.tenant_id"
LABEL_PORT = "gamecontrol.port"
LABEL_RCON_PORT = "gamecontrol.rcon_port"
LABEL_DISPLAY_NAME = "gamecontrol.display_name"
LABEL_CONFIG = "gamecontrol.config"

PHASE_DOWNLOAD = "download"
PHASE_GAME = "game"

_NAME_PATTERN = re.compile(rf"^/?{NAME_PREFIX}-(cs2|minecraft|rust)-(download-)?(.+)$", re.IGNORECASE)
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")

STEAMCMD_IMAGE = "cm2network/steamcmd:root"
CS2_APP_ID = 730
CS2_INSTALL_DIR = "/home/steam/cs2-dedicated"
STEAMCMD_INSTALL_DIR = "/data"


class FTPSource(BaseModel):
    """A container path prefix copied into the tenant's server folder."""

    prefix: str = Field(..., description="Path inside the exported filesystem, no leading slash")
    target: str = Field(default="", description="Sub-path inside the server folder")
    include: Optional[list[str]] = Field(
        None, description="Top-level names under prefix to copy; None copies everything"
    )


class WorkloadProfile(BaseModel):
    """Static knowledge about one workload type."""

    workload_type: WorkloadType
    image: str
    default_memory_mb: int
    two_phase: bool = False
    download_image: Optional[str] = None
    console_prefixes: tuple[str, ...] = ()
    console_utilities: tuple[str, ...] = ()
    console_pipes: tuple[str, ...] = ()
    process_pattern: str = ""
    log_markers: tuple[str, ...] = ()
    ftp_sources: list[FTPSource] = Field(default_factory=list)
    ftp_placeholders: dict[str, str] = Field(default_factory=dict)


_README = (
    "This folder is a point-in-time copy of your server's files.\n"
    "Re-link the server from the dashboard to refresh it.\n"
)

PROFILES: dict[WorkloadType, WorkloadProfile] = {
    WorkloadType.CS2: WorkloadProfile(
        workload_type=WorkloadType.CS2,
        image="joedwards32/cs2:latest",
        default_memory_mb=2048,
        two_phase=True,
        download_image=STEAMCMD_IMAGE,
        console_prefixes=(
            "changelevel", "map ", "mp_", "sv_", "bot_", "say", "kick", "kickid",
            "banid", "exec ", "status", "host_workshop", "game_", "users", "quit",
        ),
        console_utilities=(),
        console_pipes=(f"{CS2_INSTALL_DIR}/console.pipe", "/tmp/cs2-console-in"),
        process_pattern="cs2",
        log_markers=(
            "connected", "disconnected", "changelevel", "Host activate", "Map ",
            "say", "Error", "GC Connection", "SV:", "Loaded", "Steam",
        ),
        ftp_sources=[
            FTPSource(prefix="home/steam/cs2-dedicated/game/csgo/cfg", target="cfg"),
            FTPSource(prefix="data/game/csgo/cfg", target="cfg"),
        ],
        ftp_placeholders={
            "cfg/server.cfg": "// Server configuration\nhostname \"GameControl Server\"\n",
            "README.txt": _README,
        },
    ),
    WorkloadType.MINECRAFT: WorkloadProfile(
        workload_type=WorkloadType.MINECRAFT,
        image="itzg/minecraft-server:latest",
        default_memory_mb=4096,
        console_prefixes=(
            "/", "say", "tell", "msg", "tp", "give", "op ", "deop", "kick", "ban",
            "pardon", "whitelist", "time ", "weather", "gamemode", "difficulty",
            "list", "save-all", "save-on", "save-off", "stop", "seed", "summon",
            "effect", "gamerule", "setblock", "xp", "kill", "clear", "reload",
        ),
        console_utilities=("rcon-cli",),
        console_pipes=("/tmp/minecraft-console-in",),
        process_pattern="java",
        log_markers=(
            "INFO]", "WARN]", "ERROR]", "joined the game", "left the game", "Done (",
            "Starting minecraft server", "issued server command", "lost connection",
        ),
        ftp_sources=[
            FTPSource(
                prefix="data",
                include=[
                    "server.properties", "world", "world_nether", "world_the_end",
                    "plugins", "mods", "config", "ops.json", "whitelist.json",
                    "banned-players.json", "banned-ips.json", "usercache.json", "logs",
                ],
            ),
        ],
        ftp_placeholders={
            "server.properties": "# Minecraft server properties\n",
            "README.txt": _README,
        },
    ),
    WorkloadType.RUST: WorkloadProfile(
        workload_type=WorkloadType.RUST,
        image="didstopia/rust-server:latest",
        default_memory_mb=6144,
        console_prefixes=(
            "server.", "global.", "oxide.", "o.", "say", "kick", "ban", "unban",
            "ownerid", "moderatorid", "inventory.", "env.", "weather.", "status",
            "players", "save", "quit",
        ),
        console_utilities=("rcon",),
        console_pipes=("/tmp/rust-console-in",),
        process_pattern="RustDedicated",
        log_markers=(
            "Server startup complete", "joined", "disconnecting", "Saved", "[SAVE]",
            "Loading Level", "Server Initialized", "[CHAT]", "Kicked", "Banned",
            "Exception", "error",
        ),
        ftp_sources=[
            FTPSource(prefix="steamcmd/rust/server", target="server"),
            FTPSource(prefix="steamcmd/rust/oxide", target="oxide"),
        ],
        ftp_placeholders={
            "server/README.txt": "Rust server data appears here after the first save.\n",
            "README.txt": _README,
        },
    ),
}

# Shell prompts, steamcmd chatter and runtime plumbing
NOISE_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"^\s*[$#>]\s",
        r"^\S+@\S+:.*[#$]\s*$",
        r"Redirecting stderr",
        r"\[S_API",
        r"dlmopen",
        r"Loading Steam API",
        r"ILocalize",
        r"breakpad",
        r"setlocale",
        r"RCON Client",
        r"RCON Listener",
    )
)


def get_profile(workload_type: WorkloadType) -> WorkloadProfile:
    return PROFILES[WorkloadType(workload_type)]


def safe_name_part(value: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("-", value).strip("-").lower() or "server"


def container_name(workload_type: WorkloadType, server_id: Optional[str], phase: str = PHASE_GAME) -> str:
    """Structured container name: gamecontrol-<type>[-download]-<serverId>."""
    suffix = safe_name_part(server_id) if server_id else str(int(time.time() * 1000))
    kind = WorkloadType(workload_type).value.lower()
    if phase == PHASE_DOWNLOAD:
        return f"{NAME_PREFIX}-{kind}-download-{suffix}"
    return f"{NAME_PREFIX}-{kind}-{suffix}"


def data_volume_name(server_key: str) -> str:
    return f"{NAME_PREFIX}-cs2-{server_key}-data"


def build_labels(
    workload_type: WorkloadType,
    phase: str,
    server_key: str,
    tenant_id: Optional[str],
    port: int,
    rcon_port: int,
    display_name: str,
    config: dict[str, Any],
) -> dict[str, str]:
    return {
        LABEL_MANAGED: "true",
        LABEL_WORKLOAD: WorkloadType(workload_type).value,
        LABEL_PHASE: phase,
        LABEL_SERVER_ID: server_key,
        LABEL_TENANT_ID: tenant_id or "",
        LABEL_PORT: str(port),
        LABEL_RCON_PORT: str(rcon_port),
        LABEL_DISPLAY_NAME: display_name,
        LABEL_CONFIG: json.dumps(config, sort_keys=True),
    }


def _labels(attrs: dict) -> dict:
    return (attrs.get("Config") or {}).get("Labels") or {}


def workload_of(attrs: dict) -> Optional[WorkloadType]:
    """Workload type of a container from its labels, name or image."""
    label = _labels(attrs).get(LABEL_WORKLOAD)
    if label in WorkloadType.__members__:
        return WorkloadType(label)

    match = _NAME_PATTERN.match(attrs.get("Name") or "")
    if match:
        return WorkloadType(match.group(1).upper())

    image = (attrs.get("Config") or {}).get("Image") or ""
    for profile in PROFILES.values():
        if image and image.split(":")[0] in (profile.image.split(":")[0], (profile.download_image or "").split(":")[0]):
            return profile.workload_type
    return None


def phase_of(attrs: dict, explicit: Optional[str] = None) -> str:
    """Provisioning phase: caller-supplied value, then label, then name pattern."""
    if explicit in (PHASE_DOWNLOAD, PHASE_GAME):
        return explicit
    label = _labels(attrs).get(LABEL_PHASE)
    if label in (PHASE_DOWNLOAD, PHASE_GAME):
        return label
    match = _NAME_PATTERN.match(attrs.get("Name") or "")
    if match and match.group(2):
        return PHASE_DOWNLOAD
    return PHASE_GAME


def stored_launch_state(attrs: dict) -> dict[str, Any]:
    """Ports, ids and config recorded on a container at creation time."""
    labels = _labels(attrs)
    try:
        config = json.loads(labels.get(LABEL_CONFIG) or "{}")
    except ValueError:
        config = {}
    match = _NAME_PATTERN.match(attrs.get("Name") or "")
    server_key = labels.get(LABEL_SERVER_ID) or (match.group(3) if match else None)
    port = labels.get(LABEL_PORT)
    rcon_port = labels.get(LABEL_RCON_PORT)
    return {
        "server_key": server_key,
        "tenant_id": labels.get(LABEL_TENANT_ID) or None,
        "port": int(port) if port and port.isdigit() else None,
        "rcon_port": int(rcon_port) if rcon_port and rcon_port.isdigit() else None,
        "display_name": labels.get(LABEL_DISPLAY_NAME) or server_key or "",
        "config": config if isinstance(config, dict) else {},
    }


def _flag(value: Any) -> str:
    return "true" if value else "false"


def _memory(config: dict[str, Any], profile: WorkloadProfile) -> str:
    return f"{int(config.get('allocatedRam') or profile.default_memory_mb)}m"


def _game_ports(port: int, rcon_port: int, udp: bool) -> dict[str, int]:
    ports = {f"{port}/tcp": port, f"{rcon_port}/tcp": rcon_port}
    if udp:
        ports[f"{port}/udp"] = port
    return ports


def _cs2_environment(name: str, config: dict[str, Any], port: int, rcon_port: int) -> dict[str, str]:
    rcon_password = str(config.get("rconPassword") or "changeme")
    max_players = str(config.get("maxPlayers") or 10)
    start_map = str(config.get("map") or "de_dust2")
    return {
        "PORT": str(port),
        "RCON_PORT": str(rcon_port),
        "CS2_PORT": str(port),
        "CS2_RCON_PORT": str(rcon_port),
        "CS2_RCONPW": rcon_password,
        "CS2_SERVERNAME": name,
        "CS2_MAXPLAYERS": max_players,
        "CS2_STARTMAP": start_map,
        "CS2_CHEATS": "0",
        "CS2_SERVER_HIBERNATE": "0",
        "CS2_LAN": "0",
        "CS2_GAMETYPE": "0",
        "CS2_GAMEMODE": "1",
        "CS2_MAPGROUP": "mg_active",
        "TICKRATE": str(config.get("tickrate") or 128),
        "STEAMCMD_VALIDATE": "1",
    }


def _minecraft_environment(name: str, config: dict[str, Any], port: int, rcon_port: int) -> dict[str, str]:
    return {
        "EULA": "TRUE",
        "SERVER_PORT": str(port),
        "ENABLE_RCON": "true",
        "RCON_PORT": str(rcon_port),
        "RCON_PASSWORD": str(config.get("rconPassword") or "changeme"),
        "CREATE_CONSOLE_IN_PIPE": "true",
        "MAX_PLAYERS": str(config.get("maxPlayers") or 20),
        "DIFFICULTY": str(config.get("difficulty") or "normal"),
        "LEVEL_TYPE": str(config.get("worldType") or "default"),
        "PVP": _flag(config.get("pvp")),
        "HARDCORE": _flag(config.get("hardcore")),
        "SPAWN_PROTECTION": str(config.get("spawnProtection") or 16),
        "ALLOW_NETHER": _flag(config.get("allowNether")),
        "ALLOW_FLIGHT": _flag(config.get("allowFlight")),
        "MOTD": name,
    }


def _rust_environment(name: str, config: dict[str, Any], port: int, rcon_port: int) -> dict[str, str]:
    return {
        "RUST_SERVER_IDENTITY": "gamecontrol",
        "RUST_SERVER_NAME": name,
        "RUST_SERVER_PORT": str(port),
        "RUST_RCON_PORT": str(rcon_port),
        "RUST_RCON_PASSWORD": str(config.get("rconPassword") or "changeme"),
        "RUST_SERVER_MAXPLAYERS": str(config.get("maxPlayers") or 100),
        "RUST_SERVER_WORLDSIZE": str(config.get("worldSize") or 4000),
        "RUST_SERVER_SEED": str(config.get("worldSeed") or ""),
        "RUST_SERVER_SAVE_INTERVAL": str(config.get("saveInterval") or 600),
        "RUST_SERVER_STARTUP_ARGUMENTS": "-batchmode -load",
        "RUST_UPDATE_CHECKING": "1",
        "RUST_UPDATE_BRANCH": "public",
        "RUST_START_MODE": "2",
        "RUST_OXIDE_ENABLED": "0",
        "RUST_RCON_WEB": "1",
    }


_ENVIRONMENTS = {
    WorkloadType.CS2: _cs2_environment,
    WorkloadType.MINECRAFT: _minecraft_environment,
    WorkloadType.RUST: _rust_environment,
}


def build_download_spec(name: str, server_key: str, labels: dict[str, str]) -> dict[str, Any]:
    """Launch specification of the download-only phase.

    The container installs the game into the shared data volume and exits.
    No ports are exposed and the container is never restarted.
    """
    install = (
        f"/home/steam/steamcmd/steamcmd.sh +force_install_dir {STEAMCMD_INSTALL_DIR} "
        f"+login anonymous +app_update {CS2_APP_ID} validate +quit"
    )
    return {
        "image": STEAMCMD_IMAGE,
        "name": name,
        "command": ["bash", "-c", install],
        "labels": labels,
        "volumes": {data_volume_name(server_key): {"bind": STEAMCMD_INSTALL_DIR, "mode": "rw"}},
        "restart_policy": {"Name": "no"},
    }


def build_service_spec(
    workload_type: WorkloadType,
    name: str,
    display_name: str,
    config: dict[str, Any],
    port: int,
    rcon_port: int,
    labels: dict[str, str],
    server_key: Optional[str] = None,
) -> dict[str, Any]:
    """Launch specification of a long-running game server."""
    profile = get_profile(workload_type)
    spec: dict[str, Any] = {
        "image": profile.image,
        "name": name,
        "environment": _ENVIRONMENTS[profile.workload_type](display_name, config, port, rcon_port),
        "ports": _game_ports(port, rcon_port, udp=profile.workload_type != WorkloadType.MINECRAFT),
        "mem_limit": _memory(config, profile),
        "restart_policy": {"Name": "unless-stopped"},
        "labels": labels,
        "stdin_open": True,
        "tty": False,
    }
    if profile.workload_type == WorkloadType.CS2 and server_key:
        spec["volumes"] = {data_volume_name(server_key): {"bind": CS2_INSTALL_DIR, "mode": "rw"}}
    return spec


def is_console_command(workload_type: Optional[WorkloadType], command: str) -> bool:
    """Prefix heuristic: does the command look like game-console syntax?"""
    if workload_type is None:
        return False
    text = command.strip()
    lowered = text.lower()
    for prefix in get_profile(workload_type).console_prefixes:
        bare = prefix.rstrip()
        if prefix.endswith((" ", ".", "_", "/")):
            if lowered.startswith(prefix.lower()) or lowered == bare.lower():
                return True
        elif lowered == bare.lower() or lowered.startswith(bare.lower() + " "):
            return True
    return False
