from unittest.mock import MagicMock

import pytest

import bootstrap
import common
import context
from bootstrap import DOCKER_KEYRING
from config import CONTAINERD_CONFIG, KUBERNETES_KEYRING
from conftest import FakeHost
from models import NodeState

UBUNTU = {"id": "Ubuntu", "codename": "jammy"}


@pytest.fixture
def node(monkeypatch):
    fake = FakeHost(
        data={"node_name": "worker1"},
        facts={("LsbRelease", None): UBUNTU, ("DebArch", None): "amd64"},
    )
    for module in (bootstrap, common, context):
        monkeypatch.setattr(module, "host", fake)
    return fake


@pytest.fixture
def ops(monkeypatch):
    mocks = {}
    for name in ("apt", "files", "python", "server", "systemd"):
        mocks[name] = MagicMock()
        monkeypatch.setattr(bootstrap, name, mocks[name])
    return mocks


def recorded_states(python_mock):
    return [call.kwargs["state"] for call in python_mock.call.call_args_list]


def test_main_records_every_phase(ctx, node, ops) -> None:
    bootstrap.main(ctx)

    assert recorded_states(ops["python"]) == [
        NodeState.OS_CONFIGURED,
        NodeState.RUNTIME_CONFIGURED,
        NodeState.PACKAGES_INSTALLED,
        NodeState.KUBELET_READY,
    ]
    call = ops["python"].call.call_args_list[0]
    assert call.kwargs["function"] == ctx.node_states.record
    assert call.kwargs["node"] == "worker1"
    assert call.kwargs["cluster_id"] == "dev"


def test_main_rejects_unsupported_os(ctx, node, ops) -> None:
    node.facts[("LsbRelease", None)] = {"id": "Fedora", "codename": ""}

    with pytest.raises(AssertionError):
        bootstrap.main(ctx)


def test_run_phase_skips_recorded_state(ctx, node, ops) -> None:
    ctx.node_states.record("dev", "worker1", NodeState.PACKAGES_INSTALLED)
    step = MagicMock()

    assert not bootstrap.run_phase(ctx, NodeState.OS_CONFIGURED, [step])
    step.assert_not_called()
    ops["python"].call.assert_not_called()


def test_run_phase_forced(ctx, node, ops) -> None:
    ctx.node_states.record("dev", "worker1", NodeState.PACKAGES_INSTALLED)
    ctx.force = True
    step = MagicMock()

    assert bootstrap.run_phase(ctx, NodeState.OS_CONFIGURED, [step])
    step.assert_called_once_with(ctx)
    ops["python"].call.assert_not_called()


def test_forced_run_records_missing_phases(ctx, node, ops) -> None:
    ctx.node_states.record("dev", "worker1", NodeState.OS_CONFIGURED)
    ctx.force = True

    bootstrap.main(ctx)

    assert recorded_states(ops["python"]) == [
        NodeState.RUNTIME_CONFIGURED,
        NodeState.PACKAGES_INSTALLED,
        NodeState.KUBELET_READY,
    ]


@pytest.mark.parametrize("final", [NodeState.MASTER_READY, NodeState.JOINED])
def test_forced_rerun_keeps_finished_node(ctx, node, ops, final) -> None:
    ops["python"].call.side_effect = lambda name, function, **kwargs: function(
        **kwargs
    )
    ctx.node_states.record("dev", "worker1", NodeState.KUBELET_READY)
    ctx.node_states.record("dev", "worker1", final)
    ctx.force = True

    bootstrap.main(ctx)

    assert ops["apt"].packages.called
    assert ctx.node_states.get("dev", "worker1") == final
    assert len(ctx.node_states.history("dev", "worker1")) == 2


def test_joined_node_skips_bootstrap(ctx, node, ops) -> None:
    ctx.node_states.record("dev", "worker1", NodeState.JOINED)

    bootstrap.main(ctx)

    ops["python"].call.assert_not_called()
    ops["apt"].packages.assert_not_called()


def test_kernel_and_sysctl(ctx, node, ops) -> None:
    bootstrap.configure_kernel_modules(ctx)
    bootstrap.configure_sysctl(ctx)

    modules = [c.kwargs["module"] for c in ops["server"].modprobe.call_args_list]
    assert modules == ["overlay", "br_netfilter"]
    keys = {c.kwargs["key"]: c.kwargs["value"] for c in ops["server"].sysctl.call_args_list}
    assert keys["net.ipv4.ip_forward"] == 1
    assert keys["net.bridge.bridge-nf-call-iptables"] == 1
    assert all(c.kwargs["persist"] for c in ops["server"].sysctl.call_args_list)


@pytest.mark.parametrize(
    "init, expected",
    [("systemd\n", "systemd"), ("init", "cgroupfs"), (None, "cgroupfs")],
)
def test_cgroup_driver(node, init, expected) -> None:
    node.facts[("Command", "ps -p 1 -o comm=")] = init

    assert bootstrap.cgroup_driver() == expected


def test_container_runtime_on_systemd_host(ctx, node, ops) -> None:
    node.facts[("Command", "ps -p 1 -o comm=")] = "systemd"

    bootstrap.install_container_runtime(ctx)

    repo = ops["apt"].repo.call_args.kwargs
    assert repo["src"] == (
        f"deb [arch=amd64 signed-by={DOCKER_KEYRING}] "
        "https://download.docker.com/linux/ubuntu jammy stable"
    )
    shells = [c.kwargs["commands"][0] for c in ops["server"].shell.call_args_list]
    assert any(DOCKER_KEYRING in command for command in shells)
    assert f"containerd config default > {CONTAINERD_CONFIG}" in shells
    replace = ops["files"].replace.call_args.kwargs
    assert replace["replace"] == "SystemdCgroup = true"


def test_container_runtime_already_configured(ctx, node, ops) -> None:
    node.facts[("File", DOCKER_KEYRING)] = {"mode": 644}
    node.facts[("File", CONTAINERD_CONFIG)] = {"mode": 644}

    bootstrap.install_container_runtime(ctx)

    ops["server"].shell.assert_not_called()
    assert ops["files"].replace.call_args.kwargs["replace"] == "SystemdCgroup = false"


def test_kubernetes_repository_pins_minor_version(ctx, node, ops) -> None:
    node.facts[("File", KUBERNETES_KEYRING)] = {"mode": 644}
    ctx.settings.kubernetes_version = "v1.31"

    bootstrap.install_kubernetes_packages(ctx)

    source = ops["files"].put.call_args.kwargs["src"].getvalue()
    assert "https://pkgs.k8s.io/core:/stable:/v1.31/deb/ /" in source
    packages = ops["apt"].packages.call_args.kwargs["packages"]
    assert packages == ["kubelet", "kubeadm", "kubectl"]


def test_hold_only_unheld_packages(ctx, node, ops) -> None:
    node.facts[("Command", "apt-mark showhold")] = "kubelet\n"

    bootstrap.hold_kubernetes_packages(ctx)

    assert ops["server"].shell.call_args.kwargs["commands"] == [
        "apt-mark hold kubeadm kubectl"
    ]


def test_hold_noop_when_all_held(ctx, node, ops) -> None:
    node.facts[("Command", "apt-mark showhold")] = "kubeadm\nkubectl\nkubelet\n"

    bootstrap.hold_kubernetes_packages(ctx)

    ops["server"].shell.assert_not_called()
