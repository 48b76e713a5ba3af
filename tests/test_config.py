from pathlib import Path

import pytest

from config import (
    KUBERNETES_VERSION,
    STATE_DIR_ENV,
    environment_file,
    load_settings,
)
from errors import ConfigError
from models import NodeRole

PROJECT_DIR = Path(__file__).resolve().parent.parent


@pytest.fixture(autouse=True)
def no_state_dir_override(monkeypatch):
    monkeypatch.delenv(STATE_DIR_ENV, raising=False)


def write_config(tmp_path, text, name="staging.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_load_minimal_settings(tmp_path) -> None:
    path = write_config(tmp_path, "provider: static\n")

    settings = load_settings(path)

    assert settings.environment == "staging"
    assert settings.cluster_id == "staging"
    assert settings.kubernetes_version == KUBERNETES_VERSION
    assert settings.token_ttl == "24h"
    assert settings.join_retries == 0
    assert settings.nodes == []
    assert settings.nodes_file == settings.state_dir / "staging" / "nodes.yaml"


def test_load_full_settings(tmp_path) -> None:
    path = write_config(
        tmp_path,
        """
cluster_id: lab
state_dir: state
ssh:
  user: admin
  key: keys/id_ed25519
kubernetes:
  version: 1.31.4
  pod_network_cidr: 10.244.0.0/16
  user: root
  control_plane_endpoint: k8s.lab:6443
  token_ttl: 1h
  join_retries: 2
nodes:
  - name: master1
    role: master
    address: 10.0.0.5
  - name: worker1
    role: worker
    address: 10.0.0.6
    ssh_user: other
""",
    )

    settings = load_settings(path, "lab-env")

    assert settings.environment == "lab-env"
    assert settings.cluster_id == "lab"
    assert settings.state_dir == tmp_path / "state"
    assert settings.kubernetes_version == "v1.31"
    assert settings.pod_network_cidr == "10.244.0.0/16"
    assert settings.kube_home == "/root"
    assert settings.control_plane_endpoint == "k8s.lab:6443"
    assert settings.join_retries == 2
    assert settings.ssh_key == str(tmp_path / "keys" / "id_ed25519")
    master, worker = settings.nodes
    assert master.role == NodeRole.MASTER
    assert master.ssh_user == "admin"
    assert worker.ssh_user == "other"


def test_state_dir_from_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv(STATE_DIR_ENV, str(tmp_path / "elsewhere"))
    path = write_config(tmp_path, "state_dir: state\n")

    assert load_settings(path).state_dir == tmp_path / "elsewhere"


def test_kube_home_for_regular_user(tmp_path) -> None:
    path = write_config(tmp_path, "kubernetes:\n  user: ops\n")

    assert load_settings(path).kube_home == "/home/ops"


def test_terraform_dir_defaults_to_config_dir(tmp_path) -> None:
    path = write_config(tmp_path, "provider: terraform\n")

    assert load_settings(path).terraform_dir == tmp_path


def test_hetzner_settings(tmp_path) -> None:
    path = write_config(
        tmp_path,
        """
provider: hetzner
hetzner:
  server_type: cx32
  ssh_keys: [ops]
  servers:
    - {name: master1, role: master}
""",
    )

    hetzner = load_settings(path).hetzner

    assert hetzner.server_type == "cx32"
    assert hetzner.image == "ubuntu-22.04"
    assert hetzner.ssh_keys == ["ops"]
    assert hetzner.servers == [{"name": "master1", "role": "master"}]


@pytest.mark.parametrize(
    "text",
    [
        "provider: openstack\n",
        "kubernetes:\n  version: latest\n",
        "kubernetes:\n  join_retries: -1\n",
        "kubernetes:\n  join_retries: many\n",
        "kubernetes:\n  join_wait_timeout: [30]\n",
        "nodes:\n  - {name: a, role: boss, address: 10.0.0.1}\n",
        "- just\n- a list\n",
        "provider: [unclosed\n",
    ],
)
def test_invalid_settings(tmp_path, text) -> None:
    with pytest.raises(ConfigError):
        load_settings(write_config(tmp_path, text))


def test_missing_file(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_settings(tmp_path / "nope.yaml")


@pytest.mark.parametrize("environment", ["dev", "aws", "hetzner"])
def test_shipped_environments_load(environment) -> None:
    settings = load_settings(environment_file(environment, PROJECT_DIR))

    assert settings.environment == environment
    assert settings.cluster_id
