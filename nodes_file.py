"""
The rendered inventory: node roles and addresses handed from kubeadm-apply
to the pyinfra inventory (``inventory.py``).
"""

from pathlib import Path

import yaml

from errors import ConfigError
from models import Node, NodeRole

GROUPS = {NodeRole.MASTER: "masters", NodeRole.WORKER: "workers"}


def render_nodes(nodes: list[Node]) -> dict:
    rendered = {group: [] for group in GROUPS.values()}
    for node in nodes:
        rendered[GROUPS[node.role]].append(node.to_dict())
    return rendered


def write_nodes_file(nodes: list[Node], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(render_nodes(nodes), sort_keys=False))
    return path


def read_nodes_file(path: Path | str) -> list[Node]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Rendered inventory not found: {path}")
    data = yaml.safe_load(path.read_text()) or {}
    return [
        Node.from_dict(raw)
        for group in GROUPS.values()
        for raw in data.get(group) or []
    ]


def pyinfra_hosts(nodes: list[Node], role: NodeRole) -> list[tuple[str, dict]]:
    """``(address, data)`` pairs in the shape pyinfra inventories expect."""
    hosts = []
    for node in nodes:
        if node.role != role:
            continue
        data = {"node_name": node.name, "role": node.role.value}
        data["ssh_user"] = node.ssh_user
        if node.ssh_key:
            data["ssh_key"] = node.ssh_key
        if node.ssh_port:
            data["ssh_port"] = node.ssh_port
        hosts.append((node.address, data))
    return hosts
