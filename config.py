import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from errors import ConfigError
from models import Node

# --- Core Versions ---
KUBERNETES_VERSION = "v1.32"
CALICO_VERSION = "v3.29.2"
POD_NETWORK_CIDR = "192.168.0.0/16"
TOKEN_TTL = "24h"

# --- Node paths ---
ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
MODULES_LOAD_FILE = "/etc/modules-load.d/containerd.conf"
SYSCTL_FILE = "/etc/sysctl.d/kubernetes.conf"
CONTAINERD_CONFIG = "/etc/containerd/config.toml"
APT_KEYRINGS_DIR = "/etc/apt/keyrings"
KUBERNETES_KEYRING = f"{APT_KEYRINGS_DIR}/kubernetes-apt-keyring.gpg"
KUBERNETES_SOURCES_LIST = "/etc/apt/sources.list.d/kubernetes.list"
KUBECTX_DIR = "/opt/kubectx"
LOCAL_BIN = "/usr/local/bin"

# --- Upstream URLs ---
DOCKER_APT_URL = "https://download.docker.com/linux"
KUBERNETES_APT_URL = "https://pkgs.k8s.io/core:/stable:/{version}/deb"
CALICO_MANIFEST_URL = (
    "https://raw.githubusercontent.com/projectcalico/calico/{version}/manifests/calico.yaml"
)
KUBECTX_REPO = "https://github.com/ahmetb/kubectx.git"
K9S_INSTALL_URL = "https://webinstall.dev/k9s"

# --- Orchestrator side ---
DEFAULT_STATE_DIR = "~/.kubeadm-deploy"
ENVIRONMENTS_DIR = "environments"
PROVIDERS = ("static", "terraform", "hetzner")

# Environment variables shared between kubeadm-apply and the pyinfra deploy.
CONFIG_ENV = "KUBEADM_DEPLOY_CONFIG"
NODES_ENV = "KUBEADM_DEPLOY_NODES"
FORCE_ENV = "KUBEADM_DEPLOY_FORCE"
STATE_DIR_ENV = "KUBEADM_DEPLOY_STATE_DIR"
REGENERATE_ENV = "KUBEADM_DEPLOY_REGENERATE_TOKEN"
ENVIRONMENT_ENV = "KUBEADM_DEPLOY_ENVIRONMENT"


@dataclass
class HetznerSettings:
    token_env: str = "HETZNER_TOKEN"
    server_type: str = "cx22"
    image: str = "ubuntu-22.04"
    location: str | None = None
    ssh_keys: list[str] = field(default_factory=list)
    servers: list[dict] = field(default_factory=list)


@dataclass
class Settings:
    environment: str
    cluster_id: str
    provider: str = "static"
    state_dir: Path = Path(DEFAULT_STATE_DIR).expanduser()
    kubernetes_version: str = KUBERNETES_VERSION
    pod_network_cidr: str = POD_NETWORK_CIDR
    calico_version: str = CALICO_VERSION
    kube_user: str = "ubuntu"
    control_plane_endpoint: str | None = None
    token_ttl: str = TOKEN_TTL
    join_retries: int = 0
    join_wait_timeout: int = 0
    ssh_user: str = "ubuntu"
    ssh_key: str | None = None
    terraform_dir: Path | None = None
    hetzner: HetznerSettings = field(default_factory=HetznerSettings)
    nodes: list[Node] = field(default_factory=list)

    @property
    def cluster_dir(self) -> Path:
        return self.state_dir / self.cluster_id

    @property
    def nodes_file(self) -> Path:
        return self.cluster_dir / "nodes.yaml"

    @property
    def kube_home(self) -> str:
        if self.kube_user == "root":
            return "/root"
        return f"/home/{self.kube_user}"

    @property
    def node_defaults(self) -> dict:
        return {"ssh_user": self.ssh_user, "ssh_key": self.ssh_key}


def environment_file(environment: str, base_dir: Path | None = None) -> Path:
    base_dir = base_dir or Path.cwd()
    return base_dir / ENVIRONMENTS_DIR / f"{environment}.yaml"


def load_settings(path: Path | str, environment: str | None = None) -> Settings:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Environment file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return parse_settings(data, environment or path.stem, base_dir=path.parent)


def parse_settings(data: dict, environment: str, base_dir: Path) -> Settings:
    provider = str(data.get("provider", "static"))
    if provider not in PROVIDERS:
        raise ConfigError(
            f"Unknown provider {provider!r}, expected one of {', '.join(PROVIDERS)}"
        )

    state_dir = os.getenv(STATE_DIR_ENV) or data.get("state_dir") or DEFAULT_STATE_DIR
    kubernetes = data.get("kubernetes") or {}
    ssh = data.get("ssh") or {}

    settings = Settings(
        environment=environment,
        cluster_id=str(data.get("cluster_id") or environment),
        provider=provider,
        state_dir=_expand_path(str(state_dir), base_dir),
        kubernetes_version=_minor_version(
            str(kubernetes.get("version", KUBERNETES_VERSION))
        ),
        pod_network_cidr=str(kubernetes.get("pod_network_cidr", POD_NETWORK_CIDR)),
        calico_version=str(kubernetes.get("calico_version", CALICO_VERSION)),
        kube_user=str(kubernetes.get("user", "ubuntu")),
        control_plane_endpoint=kubernetes.get("control_plane_endpoint"),
        token_ttl=str(kubernetes.get("token_ttl", TOKEN_TTL)),
        join_retries=_integer(kubernetes, "join_retries"),
        join_wait_timeout=_integer(kubernetes, "join_wait_timeout"),
        ssh_user=str(ssh.get("user", "ubuntu")),
        ssh_key=(
            str(_expand_path(str(ssh["key"]), base_dir)) if ssh.get("key") else None
        ),
    )

    if settings.join_retries < 0:
        raise ConfigError("kubernetes.join_retries must be >= 0")

    terraform = data.get("terraform") or {}
    if terraform.get("dir"):
        settings.terraform_dir = _expand_path(str(terraform["dir"]), base_dir)
    elif provider == "terraform":
        settings.terraform_dir = base_dir

    hetzner = data.get("hetzner") or {}
    if hetzner:
        settings.hetzner = HetznerSettings(
            token_env=str(hetzner.get("token_env", "HETZNER_TOKEN")),
            server_type=str(hetzner.get("server_type", "cx22")),
            image=str(hetzner.get("image", "ubuntu-22.04")),
            location=hetzner.get("location"),
            ssh_keys=[str(key) for key in hetzner.get("ssh_keys", [])],
            servers=list(hetzner.get("servers", [])),
        )

    settings.nodes = [
        Node.from_dict(raw, settings.node_defaults) for raw in data.get("nodes") or []
    ]
    return settings


def _integer(section: dict, key: str, default: int = 0) -> int:
    value = section.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"kubernetes.{key} must be an integer, got {value!r}") from e


def _minor_version(version: str) -> str:
    """'1.32.2' and 'v1.32' both pin the 'v1.32' package stream."""
    parts = version.lstrip("v").split(".")
    if len(parts) < 2 or not all(part.isdigit() for part in parts[:2]):
        raise ConfigError(f"Invalid Kubernetes version: {version!r}")
    return f"v{parts[0]}.{parts[1]}"


def _expand_path(value: str, base: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    return path
