"""
Per-node OS and runtime setup, run on every host whatever its role.

Kernel modules, sysctl, containerd, then kubelet/kubeadm/kubectl pinned to
one minor version. Each phase records the node state once done, and is
skipped on later runs once recorded (unless the run is forced).
"""

import io

from pyinfra import host, logger
from pyinfra.facts.deb import DebArch
from pyinfra.facts.files import File
from pyinfra.facts.server import Command, LsbRelease
from pyinfra.operations import apt, files, python, server, systemd

from common import check_server
from config import (
    APT_KEYRINGS_DIR,
    CONTAINERD_CONFIG,
    DOCKER_APT_URL,
    KUBERNETES_APT_URL,
    KUBERNETES_KEYRING,
    KUBERNETES_SOURCES_LIST,
    MODULES_LOAD_FILE,
    SYSCTL_FILE,
)
from context import DeployContext, node_name
from models import NodeState

KERNEL_MODULES = ["overlay", "br_netfilter"]

SYSCTL_SETTINGS = {
    "net.bridge.bridge-nf-call-ip6tables": 1,
    "net.bridge.bridge-nf-call-iptables": 1,
    "net.ipv4.ip_forward": 1,
}

PREREQUISITE_PACKAGES = [
    "curl",
    "gnupg2",
    "software-properties-common",
    "apt-transport-https",
    "ca-certificates",
]

DOCKER_KEYRING = f"{APT_KEYRINGS_DIR}/docker.gpg"
CONTAINERD_PACKAGES = ["containerd.io"]
KUBERNETES_PACKAGES = ["kubelet", "kubeadm", "kubectl"]


def main(ctx: DeployContext) -> None:
    check_server()
    run_phase(
        ctx,
        NodeState.OS_CONFIGURED,
        [configure_kernel_modules, configure_sysctl],
    )
    run_phase(ctx, NodeState.RUNTIME_CONFIGURED, [install_container_runtime])
    run_phase(
        ctx,
        NodeState.PACKAGES_INSTALLED,
        [install_kubernetes_packages, hold_kubernetes_packages],
    )
    run_phase(ctx, NodeState.KUBELET_READY, [start_kubelet])


def run_phase(ctx: DeployContext, target: NodeState, steps) -> bool:
    """Run ``steps`` unless ``target`` is already recorded for this node."""
    node = node_name()
    current = ctx.node_states.get(ctx.cluster_id, node)
    done = current.reached(target)
    if done and not ctx.force:
        logger.info(f"{node}: {target.value} already recorded, skipping")
        return False

    for step in steps:
        step(ctx)

    # a forced re-run never writes back an earlier state
    if done:
        return True
    python.call(
        name=f"Record {target.value} for {node}",
        function=ctx.node_states.record,
        cluster_id=ctx.cluster_id,
        node=node,
        state=target,
    )
    return True


#
# Kernel
#
def configure_kernel_modules(ctx: DeployContext) -> None:
    files.put(
        name="Persist kernel modules for containerd",
        src=io.StringIO("\n".join(KERNEL_MODULES) + "\n"),
        dest=MODULES_LOAD_FILE,
        mode="644",
        _sudo=True,
    )
    for module in KERNEL_MODULES:
        server.modprobe(
            name=f"Load kernel module {module}",
            module=module,
            _sudo=True,
        )


def configure_sysctl(ctx: DeployContext) -> None:
    for key, value in SYSCTL_SETTINGS.items():
        server.sysctl(
            name=f"Set {key}={value}",
            key=key,
            value=value,
            persist=True,
            persist_file=SYSCTL_FILE,
            _sudo=True,
        )


#
# Container runtime
#
def install_apt_keyring(label: str, url: str, keyring: str) -> None:
    if host.get_fact(File, path=keyring):
        return
    files.directory(
        name="Create directory for apt keyrings",
        path=APT_KEYRINGS_DIR,
        mode="755",
        _sudo=True,
    )
    server.shell(
        name=f"Add the {label} apt gpg key",
        commands=[f"curl -fsSL {url} | gpg --dearmor -o {keyring}"],
        _sudo=True,
    )


def install_container_runtime(ctx: DeployContext) -> None:
    apt.packages(
        name="Install prerequisites",
        packages=PREREQUISITE_PACKAGES,
        update=True,
        cache_time=3600,
        _sudo=True,
    )

    lsb_info = host.get_fact(LsbRelease)
    distro = lsb_info["id"].lower()
    code_name = lsb_info["codename"]
    arch = host.get_fact(DebArch)

    install_apt_keyring("Docker", f"{DOCKER_APT_URL}/{distro}/gpg", DOCKER_KEYRING)
    apt.repo(
        name="Add Docker repo",
        src=(
            f"deb [arch={arch} signed-by={DOCKER_KEYRING}] "
            f"{DOCKER_APT_URL}/{distro} {code_name} stable"
        ),
        filename="docker",
        _sudo=True,
    )
    apt.packages(
        name="Install containerd",
        packages=CONTAINERD_PACKAGES,
        update=True,
        _sudo=True,
    )

    changes = []
    if not host.get_fact(File, path=CONTAINERD_CONFIG):
        files.directory(
            name="Create containerd config directory",
            path="/etc/containerd",
            _sudo=True,
        )
        changes.append(
            server.shell(
                name="Generate default containerd config",
                commands=[f"containerd config default > {CONTAINERD_CONFIG}"],
                _sudo=True,
            )
        )

    systemd_cgroup = cgroup_driver() == "systemd"
    changes.append(
        files.replace(
            name=f"Set SystemdCgroup = {str(systemd_cgroup).lower()} in containerd",
            path=CONTAINERD_CONFIG,
            text=f"SystemdCgroup = {str(not systemd_cgroup).lower()}",
            replace=f"SystemdCgroup = {str(systemd_cgroup).lower()}",
            _sudo=True,
        )
    )

    systemd.service(
        name="Restart containerd",
        service="containerd",
        restarted=True,
        _sudo=True,
        _if=lambda: any(op.did_change() for op in changes),
    )
    systemd.service(
        name="Enable/start containerd",
        service="containerd",
        running=True,
        enabled=True,
        _sudo=True,
    )


def cgroup_driver() -> str:
    """The cgroup driver matching the init system (PID 1) of the host."""
    init = host.get_fact(Command, "ps -p 1 -o comm=") or ""
    return "systemd" if init.strip() == "systemd" else "cgroupfs"


#
# Kubernetes packages
#
def install_kubernetes_packages(ctx: DeployContext) -> None:
    repo_url = KUBERNETES_APT_URL.format(version=ctx.settings.kubernetes_version)
    install_apt_keyring("Kubernetes", f"{repo_url}/Release.key", KUBERNETES_KEYRING)

    repo = files.put(
        name=f"Add Kubernetes {ctx.settings.kubernetes_version} repository",
        src=io.StringIO(f"deb [signed-by={KUBERNETES_KEYRING}] {repo_url}/ /\n"),
        dest=KUBERNETES_SOURCES_LIST,
        mode="644",
        _sudo=True,
    )
    apt.update(
        name="Update apt cache for the Kubernetes repository",
        _sudo=True,
        _if=repo.did_change,
    )
    apt.packages(
        name="Install kubelet, kubeadm and kubectl",
        packages=KUBERNETES_PACKAGES,
        update=True,
        cache_time=3600,
        _sudo=True,
    )


def hold_kubernetes_packages(ctx: DeployContext) -> None:
    held = (host.get_fact(Command, "apt-mark showhold") or "").split()
    to_hold = [package for package in KUBERNETES_PACKAGES if package not in held]
    if not to_hold:
        return
    server.shell(
        name="Hold Kubernetes packages to prevent automatic upgrades",
        commands=[f"apt-mark hold {' '.join(to_hold)}"],
        _sudo=True,
    )


def start_kubelet(ctx: DeployContext) -> None:
    systemd.service(
        name="Enable/start kubelet",
        service="kubelet",
        running=True,
        enabled=True,
        _sudo=True,
    )
