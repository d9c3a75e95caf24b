"""CLI for the VM manager: vm-manager serve, vm-manager ports, vm-manager check."""

import argparse
import os
import sys
from typing import Optional

import httpx
import uvicorn
from docker.errors import DockerException

from vm_manager.config import load_config
from vm_manager.docker_client import DockerClient
from vm_manager.ports import PortAllocator


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API under uvicorn."""
    if args.config:
        # read by load_config() inside the app's lifespan
        os.environ["CONFIG_FILE"] = args.config
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    uvicorn.run(
        "vm_manager.api:app",
        host=args.host or config.listen_host,
        port=args.port or config.listen_port,
        log_level=config.log_level.lower(),
    )
    return 0


def cmd_ports(args: argparse.Namespace) -> int:
    """Print the host ports a fresh reconciliation would claim."""
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    try:
        docker_client = DockerClient(base_url=config.docker_base_url, timeout=config.docker_timeout)
    except DockerException as e:
        print(f"Docker not reachable: {e}", file=sys.stderr)
        return 1
    try:
        allocator = PortAllocator(config.port_ranges)
        claimed = allocator.reconcile(docker_client.list_container_attrs())
    finally:
        docker_client.close()

    for workload_type, port_range in allocator.ranges.items():
        in_range = sorted(port for port in claimed if port in port_range)
        print(f"{workload_type.value:<10} {port_range.start}-{port_range.end}: "
              f"{len(in_range)}/{port_range.size} claimed")
        for port in in_range:
            print(f"  {port}")
    other = sorted(p for p in claimed if not any(p in r for r in allocator.ranges.values()))
    if other:
        print(f"outside ranges: {', '.join(str(p) for p in other)}")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Probe a running daemon's /health endpoint."""
    url = args.url.rstrip("/") + "/health"
    try:
        response = httpx.get(url, timeout=args.timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Health check failed for {url}: {e}", file=sys.stderr)
        return 1
    print(f"{url}: {response.json().get('status', 'unknown')}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vm-manager",
        description="GameControl VM manager: game-server container orchestration daemon.",
    )
    sub = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = sub.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("-c", "--config", metavar="PATH", help="Config file path (default: config.yml)")
    serve_parser.add_argument("--host", help="Listen address (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Listen port (default: from config)")
    serve_parser.set_defaults(func=cmd_serve)

    ports_parser = sub.add_parser("ports", help="Show host ports held by existing containers")
    ports_parser.add_argument("-c", "--config", metavar="PATH", help="Config file path (default: config.yml)")
    ports_parser.set_defaults(func=cmd_ports)

    check_parser = sub.add_parser("check", help="Probe a running daemon")
    check_parser.add_argument("--url", default="http://127.0.0.1:3001", help="Daemon base URL")
    check_parser.add_argument("--timeout", type=float, default=5.0, help="Request timeout in seconds")
    check_parser.set_defaults(func=cmd_check)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
