"""
Control plane initialization, run on the single host of the ``masters`` group.

Initializes kubeadm once, then publishes a fresh join command for the
workers on every run, installs the admin kubeconfig for the kube user,
applies the Calico pod network and a few operator conveniences.
"""

import json

from pyinfra import host, logger
from pyinfra.facts.files import File
from pyinfra.operations import files, git, python, server

from common import log_callback
from config import (
    ADMIN_CONF,
    CALICO_MANIFEST_URL,
    K9S_INSTALL_URL,
    KUBECTX_DIR,
    KUBECTX_REPO,
    LOCAL_BIN,
)
from context import DeployContext, node_name
from errors import DeployError, TokenRetrievalError
from join_command import JoinCommand, parse_join_command
from models import NodeState

CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"


def main(ctx: DeployContext) -> None:
    if ctx.regenerate_only:
        publish_join_command(ctx)
        return

    init_control_plane(ctx)
    publish_join_command(ctx)
    configure_kubeconfig(ctx)
    apply_pod_network(ctx)
    install_operator_tools(ctx)

    python.call(
        name=f"Record {NodeState.MASTER_READY.value} for {node_name()}",
        function=ctx.node_states.record,
        cluster_id=ctx.cluster_id,
        node=node_name(),
        state=NodeState.MASTER_READY,
    )


def init_control_plane(ctx: DeployContext) -> None:
    if host.get_fact(File, path=ADMIN_CONF):
        logger.info(f"{node_name()}: control plane already initialized")
        return

    command = f"kubeadm init --pod-network-cidr={ctx.settings.pod_network_cidr}"
    if ctx.settings.control_plane_endpoint:
        command += f" --control-plane-endpoint={ctx.settings.control_plane_endpoint}"
    server.shell(
        name="Initialize kubeadm",
        commands=[command],
        _sudo=True,
    )


#
# Join command
#
def retrieve_join_command(target, ttl: str) -> JoinCommand:
    """Create a new token on ``target`` and return its join command."""
    initialized, _ = target.run_shell_command(f"test -f {ADMIN_CONF}", _sudo=True)
    if not initialized:
        raise TokenRetrievalError(
            f"Control plane on {target.name} is not initialized ({ADMIN_CONF} missing)"
        )

    status, output = target.run_shell_command(
        f"kubeadm token create --print-join-command --ttl {ttl}",
        _sudo=True,
    )
    if not status:
        raise TokenRetrievalError(
            f"Could not create a join token on {target.name}",
            output=output.stderr,
        )
    return parse_join_command(output.stdout)


def publish_callback(ctx: DeployContext, target=None) -> None:
    join_command = retrieve_join_command(target or host, ctx.settings.token_ttl)
    ctx.handoff.publish(ctx.cluster_id, join_command, ttl=ctx.settings.token_ttl)


def publish_join_command(ctx: DeployContext) -> None:
    python.call(
        name="Publish join command for the workers",
        function=publish_callback,
        ctx=ctx,
    )


#
# Kubeconfig
#
def configure_kubeconfig(ctx: DeployContext) -> None:
    user = ctx.settings.kube_user
    kube_dir = f"{ctx.settings.kube_home}/.kube"
    kubeconfig = f"{kube_dir}/config"
    bashrc = f"{ctx.settings.kube_home}/.bashrc"

    files.directory(
        name=f"Ensure {kube_dir} exists",
        path=kube_dir,
        user=user,
        group=user,
        mode="755",
        _sudo=True,
    )
    server.shell(
        name="Copy kubeconfig file",
        commands=[
            f"cmp -s {ADMIN_CONF} {kubeconfig} || "
            f"install -o {user} -g {user} -m 0644 {ADMIN_CONF} {kubeconfig}"
        ],
        _sudo=True,
    )
    for line in (f"export KUBECONFIG={kubeconfig}", "alias k='kubectl'"):
        files.line(
            name=f"Add {line!r} to .bashrc",
            path=bashrc,
            line=line,
            escape_regex_characters=True,
            _sudo=True,
        )


#
# Pod network
#
def apply_pod_network(ctx: DeployContext) -> None:
    user = ctx.settings.kube_user
    manifest = f"{ctx.settings.kube_home}/calico.yaml"
    files.download(
        name=f"Download Calico {ctx.settings.calico_version} manifest",
        src=CALICO_MANIFEST_URL.format(version=ctx.settings.calico_version),
        dest=manifest,
        user=user,
        group=user,
        mode="644",
        _sudo=True,
    )
    result = server.shell(
        name="Apply Calico network plugin",
        commands=[f"kubectl apply -f {manifest}"],
        _sudo=True,
        _sudo_user=user,
        _env={"KUBECONFIG": f"{ctx.settings.kube_home}/.kube/config"},
    )
    python.call(
        name="Show Calico apply output",
        function=log_callback,
        result=result,
    )


#
# Operator tools, none of them is required for the cluster to work
#
def install_operator_tools(ctx: DeployContext) -> None:
    git.repo(
        name="Clone kubectx repository",
        src=KUBECTX_REPO,
        dest=KUBECTX_DIR,
        branch="master",
        _sudo=True,
        _ignore_errors=True,
    )
    for tool in ("kubectx", "kubens"):
        files.link(
            name=f"Create symbolic link for {tool}",
            path=f"{LOCAL_BIN}/{tool}",
            target=f"{KUBECTX_DIR}/{tool}",
            _sudo=True,
            _ignore_errors=True,
        )

    if not host.get_fact(File, path=f"{LOCAL_BIN}/k9s"):
        server.shell(
            name="Download and install k9s",
            commands=[
                f"curl -sS {K9S_INSTALL_URL} | bash",
                f"install -m 0755 $HOME/.local/bin/k9s {LOCAL_BIN}/k9s",
            ],
            _sudo=True,
            _ignore_errors=True,
        )


#
# Report
#
def summarize_nodes(data: dict) -> dict:
    """Count control-plane and worker nodes in ``kubectl get nodes -o json``."""
    summary = {"total": 0, "control_plane": [], "workers": [], "not_ready": []}
    for item in data.get("items", []):
        metadata = item.get("metadata", {})
        name = metadata.get("name", "?")
        summary["total"] += 1
        if CONTROL_PLANE_LABEL in metadata.get("labels", {}):
            summary["control_plane"].append(name)
        else:
            summary["workers"].append(name)
        conditions = item.get("status", {}).get("conditions", [])
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
        )
        if not ready:
            summary["not_ready"].append(name)
    return summary


def report_callback(target=None) -> dict:
    target = target or host
    status, output = target.run_shell_command(
        f"kubectl --kubeconfig {ADMIN_CONF} get nodes -o json",
        _sudo=True,
    )
    if not status:
        raise DeployError("Could not list cluster nodes", output=output.stderr)

    summary = summarize_nodes(json.loads(output.stdout))
    logger.info("-" * 60)
    logger.info(
        f"Cluster nodes: {summary['total']} "
        f"({len(summary['control_plane'])} control-plane, "
        f"{len(summary['workers'])} worker)"
    )
    for name in summary["control_plane"]:
        logger.info(f"  control-plane: {name}")
    for name in summary["workers"]:
        logger.info(f"  worker: {name}")
    if summary["not_ready"]:
        logger.warning(f"Not ready yet: {', '.join(summary['not_ready'])}")
    logger.info("-" * 60)
    return summary


def report_cluster(ctx: DeployContext) -> None:
    python.call(
        name="Show cluster nodes",
        function=report_callback,
    )
