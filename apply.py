#!/usr/bin/env python3

"""
Provision the nodes of an environment, then bootstrap the kubeadm cluster.

1. Loads ``environments/<ENVIRONMENT>.yaml``.
2. Provisions the nodes (static list, Terraform or Hetzner Cloud).
3. Renders the node inventory under ``<state_dir>/<cluster_id>/nodes.yaml``.
4. Runs ``pyinfra inventory.py deploy-cluster.py`` against it.
5. Prints the state of every node and exits non-zero on any failure.

Usage:
    kubeadm-apply dev
    kubeadm-apply --config ./staging.yaml --skip-provision
    kubeadm-apply dev --regenerate-token
"""

import argparse
import sys
from pathlib import Path

from common import colors, command_exists, print_color, run_command
from config import (
    CONFIG_ENV,
    ENVIRONMENT_ENV,
    FORCE_ENV,
    NODES_ENV,
    REGENERATE_ENV,
    STATE_DIR_ENV,
    Settings,
    environment_file,
    load_settings,
)
from context import DeployContext
from errors import DeployError, JoinError, PackageInstallError, TokenRetrievalError
from models import Node, NodeRole, NodeState
from nodes_file import read_nodes_file, write_nodes_file
from provisioner import provision

PROJECT_DIR = Path(__file__).resolve().parent
INVENTORY_FILE = PROJECT_DIR / "inventory.py"
DEPLOY_FILE = PROJECT_DIR / "deploy-cluster.py"


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Provision and bootstrap a kubeadm cluster.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "environment",
        nargs="?",
        help="Environment name, loads environments/<ENVIRONMENT>.yaml.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to the environment file, instead of environments/<ENVIRONMENT>.yaml.",
    )
    parser.add_argument(
        "--skip-provision",
        action="store_true",
        help="Re-use the nodes rendered by a previous run.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what pyinfra would change without changing anything.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run every bootstrap phase even if already recorded for a node.",
    )
    parser.add_argument(
        "--parallel",
        type=int,
        help="Number of hosts pyinfra works on at once.",
    )
    parser.add_argument(
        "--regenerate-token",
        action="store_true",
        help="Only publish a fresh join command from the master.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args(argv)
    if not args.environment and not args.config:
        parser.error("an ENVIRONMENT or --config is required")
    return args


def load_environment(args: argparse.Namespace) -> tuple[Path, Settings]:
    config_path = args.config or environment_file(args.environment, PROJECT_DIR)
    return config_path, load_settings(config_path, args.environment)


def resolve_nodes(settings: Settings, skip_provision: bool) -> list[Node]:
    if skip_provision:
        print_color(colors.YELLOW, f"Re-using nodes from {settings.nodes_file}")
        return read_nodes_file(settings.nodes_file)
    print_color(colors.BLUE, f"--- Provisioning nodes ({settings.provider}) ---")
    return provision(settings)


def build_pyinfra_command(args: argparse.Namespace) -> list[str]:
    command = ["pyinfra", "-y"]
    if args.verbose:
        command.append("-" + "v" * args.verbose)
    if args.dry_run:
        command.append("--dry")
    if args.parallel:
        command.extend(["--parallel", str(args.parallel)])
    command.extend([str(INVENTORY_FILE), str(DEPLOY_FILE)])
    return command


def build_deploy_env(
    args: argparse.Namespace, config_path: Path, settings: Settings
) -> dict[str, str]:
    return {
        CONFIG_ENV: str(Path(config_path).resolve()),
        ENVIRONMENT_ENV: settings.environment,
        NODES_ENV: str(settings.nodes_file),
        STATE_DIR_ENV: str(settings.state_dir),
        FORCE_ENV: "1" if args.force else "0",
        REGENERATE_ENV: "1" if args.regenerate_token else "0",
    }


def collect_failures(
    ctx: DeployContext,
    nodes: list[Node],
    previous_generation: int = 0,
    regenerate_only: bool = False,
) -> list[DeployError]:
    """Name what went wrong from the recorded node states and join record."""
    failures = []
    record = ctx.handoff.get(ctx.cluster_id)
    if record is None or record.generation <= previous_generation:
        failures.append(
            TokenRetrievalError("The master did not publish a new join command")
        )
    if regenerate_only:
        return failures

    for node in nodes:
        state = ctx.node_states.get(ctx.cluster_id, node.name)
        if not state.reached(NodeState.KUBELET_READY):
            failures.append(
                PackageInstallError(f"{node.name}: bootstrap stopped at {state.value}")
            )
        elif node.role == NodeRole.MASTER and state != NodeState.MASTER_READY:
            failures.append(DeployError(f"{node.name}: control plane not ready"))
        elif node.role == NodeRole.WORKER and state != NodeState.JOINED:
            failures.append(JoinError(f"{node.name}: not joined", node=node.name))
    return failures


def show_node_states(ctx: DeployContext, nodes: list[Node]) -> None:
    print_color(colors.BLUE, f"\n--- Cluster {ctx.cluster_id} ---")
    states = ctx.node_states.summary(ctx.cluster_id)
    for node in nodes:
        state = states.get(node.name, NodeState.PENDING)
        done = state in (NodeState.MASTER_READY, NodeState.JOINED)
        print_color(
            colors.GREEN if done else colors.YELLOW,
            f"  {node.name:<20} {node.role.value:<7} {node.address:<16} {state.value}",
        )


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config_path, settings = load_environment(args)
        nodes = resolve_nodes(settings, args.skip_provision)
        write_nodes_file(nodes, settings.nodes_file)
        print_color(colors.GREEN, f"Inventory rendered to {settings.nodes_file}")

        ctx = DeployContext.from_settings(settings)
        previous = ctx.handoff.get(ctx.cluster_id)
        previous_generation = previous.generation if previous else 0

        if not command_exists("pyinfra"):
            raise DeployError("pyinfra not found. Is it installed in this environment?")

        result = run_command(
            build_pyinfra_command(args),
            check=False,
            env=build_deploy_env(args, config_path, settings),
            cwd=PROJECT_DIR,
        )
        if args.dry_run:
            return result.returncode

        show_node_states(ctx, nodes)
        failures = collect_failures(
            ctx, nodes, previous_generation, regenerate_only=args.regenerate_token
        )
        if result.returncode != 0 and not failures:
            failures.append(
                DeployError(f"pyinfra exited with return code {result.returncode}")
            )
    except DeployError as e:
        print_color(colors.RED, f"FATAL: {e}")
        return 1

    for failure in failures:
        print_color(colors.RED, f"{type(failure).__name__}: {failure}")
    if failures:
        return 1
    print_color(colors.GREEN, "\n--- Cluster is ready! ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
