from dataclasses import asdict, dataclass
from enum import Enum

from errors import ConfigError


class NodeRole(str, Enum):
    MASTER = "master"
    WORKER = "worker"


class NodeState(str, Enum):
    """Bootstrap progress of a node, in the order it is reached."""

    PENDING = "pending"
    OS_CONFIGURED = "os_configured"
    RUNTIME_CONFIGURED = "runtime_configured"
    PACKAGES_INSTALLED = "packages_installed"
    KUBELET_READY = "kubelet_ready"
    MASTER_READY = "master_ready"
    JOINED = "joined"

    @property
    def rank(self) -> int:
        # master_ready and joined are the two role-specialized end states
        return min(_STATE_ORDER.index(self), _STATE_ORDER.index(NodeState.MASTER_READY))

    def reached(self, other: "NodeState") -> bool:
        if other in ROLE_STATES:
            return self == other
        return self.rank >= other.rank


_STATE_ORDER = list(NodeState)
ROLE_STATES = (NodeState.MASTER_READY, NodeState.JOINED)


@dataclass
class Node:
    name: str
    role: NodeRole
    address: str
    ssh_user: str = "ubuntu"
    ssh_key: str | None = None
    ssh_port: int | None = None

    @classmethod
    def from_dict(cls, data: dict, defaults: dict | None = None) -> "Node":
        defaults = defaults or {}
        try:
            role = NodeRole(str(data["role"]).lower())
        except KeyError as e:
            raise ConfigError(f"Node entry is missing {e.args[0]!r}: {data!r}") from e
        except ValueError as e:
            raise ConfigError(f"Unknown node role {data['role']!r}") from e
        address = data.get("address")
        if not address:
            raise ConfigError(f"Node entry is missing 'address': {data!r}")
        port = data.get("ssh_port", defaults.get("ssh_port"))
        if port and not str(port).isdigit():
            raise ConfigError(f"Invalid ssh_port {port!r} for node {address}")
        return cls(
            name=str(data.get("name") or address),
            role=role,
            address=str(address),
            ssh_user=str(data.get("ssh_user") or defaults.get("ssh_user") or "ubuntu"),
            ssh_key=data.get("ssh_key") or defaults.get("ssh_key"),
            ssh_port=int(port) if port else None,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["role"] = self.role.value
        return {k: v for k, v in data.items() if v is not None}


def validate_nodes(nodes: list[Node]) -> None:
    """A cluster has exactly one master and uniquely named nodes."""
    masters = [node for node in nodes if node.role == NodeRole.MASTER]
    if len(masters) != 1:
        raise ConfigError(f"Expected exactly one master node, found {len(masters)}")
    names = [node.name for node in nodes]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate node names: {', '.join(duplicates)}")
