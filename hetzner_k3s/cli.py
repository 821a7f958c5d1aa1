"""Command-line entry point.

Usage:
    hetzner-k3s create-cluster -c cluster.toml
    hetzner-k3s delete-cluster -c cluster.toml [-y]
    hetzner-k3s upgrade-cluster -c cluster.toml
    hetzner-k3s list-servers -c cluster.toml
    hetzner-k3s releases [--filter REGEX] [--latest]
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from loguru import logger
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from hetzner_k3s import __version__
from hetzner_k3s.cluster.resources import private_ip, public_ip
from hetzner_k3s.config import ClusterSpec, load_config
from hetzner_k3s.core.exceptions import HetznerK3sError
from hetzner_k3s.hetzner.client import HetznerClient
from hetzner_k3s.infra.http import HttpClient
from hetzner_k3s.infra.kubectl import KubectlApplier
from hetzner_k3s.infra.ssh import HostKeyPolicy, SSHExecutor
from hetzner_k3s.logging import LogConfig, setup_logging
from hetzner_k3s.orchestrator import ClusterOrchestrator
from hetzner_k3s.releases import ReleaseLister

EXIT_INTERRUPTED = 130

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hetzner-k3s",
        description="Create, upgrade and delete k3s clusters on Hetzner Cloud",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--log-file", type=str, default=None, help="Also write a debug log to this file")
    parser.add_argument("--github-token", type=str, default=None, help="GitHub token for the releases API")

    sub = parser.add_subparsers(dest="command", required=True)

    def with_config(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("-c", "--config", type=Path, default=None, help="Cluster configuration (TOML)")
        return p

    create = with_config(sub.add_parser("create-cluster", help="Create or complete a cluster"))
    create.add_argument(
        "-y", "--auto-approve", action="store_true",
        help="Trust unknown SSH host keys without asking",
    )
    delete = with_config(sub.add_parser("delete-cluster", help="Delete every resource of a cluster"))
    delete.add_argument("-y", "--auto-approve", action="store_true", help="Do not ask for confirmation")
    with_config(sub.add_parser("upgrade-cluster", help="Upgrade k3s to the configured version"))
    with_config(sub.add_parser("list-servers", help="List the servers of a cluster"))

    releases = sub.add_parser("releases", help="List available k3s releases")
    releases.add_argument("--filter", type=str, default=None, help="Regular expression filter")
    releases.add_argument("--latest", action="store_true", help="Only the newest matching release")
    return parser


# =============================================================================
# Commands
# =============================================================================


def _orchestrator(
    spec: ClusterSpec,
    client: HetznerClient,
    lister: ReleaseLister,
    http: HttpClient,
    *,
    auto_approve: bool = False,
) -> ClusterOrchestrator:
    host_keys = HostKeyPolicy(auto_approve=auto_approve) if spec.verify_host_key else None
    return ClusterOrchestrator(
        spec=spec,
        provider=client,
        releases=lister,
        http=http,
        applier=KubectlApplier(spec.kubeconfig_path),
        executor_factory=lambda key: SSHExecutor(private_key=key, host_keys=host_keys),
    )


def _servers_table(servers: list[Any]) -> Table:
    table = Table(title="Servers")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Public IP")
    table.add_column("Private IP")
    for s in servers:
        table.add_row(
            s["name"],
            s.get("status", ""),
            (s.get("server_type") or {}).get("name", ""),
            public_ip(s) or "-",
            private_ip(s) or "-",
        )
    return table


async def _cluster_command(args: argparse.Namespace) -> int:
    spec = load_config(args.config)
    async with (
        HetznerClient(spec.hetzner_token) as client,
        ReleaseLister(args.github_token) as lister,
        HttpClient() as http,
    ):
        orchestrator = _orchestrator(
            spec, client, lister, http, auto_approve=getattr(args, "auto_approve", False)
        )
        match args.command:
            case "create-cluster":
                await orchestrator.create()
                console.print(f"Kubeconfig written to [bold]{spec.kubeconfig_path}[/bold]")
            case "delete-cluster":
                if not args.auto_approve and not Confirm.ask(
                    f"Delete cluster [bold]{spec.cluster_name}[/bold] and all its resources?",
                    console=console,
                ):
                    console.print("Aborted.")
                    return 1
                await orchestrator.delete()
            case "upgrade-cluster":
                await orchestrator.upgrade()
            case "list-servers":
                console.print(_servers_table(await orchestrator.list_servers()))
    return 0


async def _releases_command(args: argparse.Namespace) -> int:
    async with ReleaseLister(args.github_token) as lister:
        versions = await lister.available(args.filter, latest=args.latest)
    for version in versions:
        console.print(version)
    return 0


async def _dispatch(args: argparse.Namespace) -> int:
    if args.command == "releases":
        return await _releases_command(args)
    return await _cluster_command(args)


# =============================================================================
# Entry point
# =============================================================================


async def _run_cancellable(coro: Coroutine[Any, Any, int]) -> int:
    """Run ``coro`` as the root task; SIGINT/SIGTERM cancel it and every child."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    assert task is not None
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)
    try:
        return await coro
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(LogConfig(level="DEBUG" if args.debug else "INFO", file=args.log_file))

    try:
        return asyncio.run(_run_cancellable(_dispatch(args)))
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.warning("Interrupted; resources created so far are left in place.")
        return EXIT_INTERRUPTED
    except HetznerK3sError as e:
        logger.error("{err}", err=e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
