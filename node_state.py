"""
Per-node bootstrap state, recorded by the machine driving the deploy.

One JSON file per node so hosts running in parallel never write the same
file:

    <state_dir>/<cluster_id>/nodes/<node>.json
"""

import json
from datetime import datetime, timezone
from pathlib import Path

from pyinfra import logger

from errors import ConfigError, StateTransitionError
from models import ROLE_STATES, NodeState


class NodeStateStore:
    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)

    def path(self, cluster_id: str, node: str) -> Path:
        return self.state_dir / cluster_id / "nodes" / f"{node}.json"

    def get(self, cluster_id: str, node: str) -> NodeState:
        data = self._load(self.path(cluster_id, node))
        return NodeState(data["state"]) if data else NodeState.PENDING

    def history(self, cluster_id: str, node: str) -> list[dict]:
        data = self._load(self.path(cluster_id, node))
        return data.get("history", []) if data else []

    def record(self, cluster_id: str, node: str, state: NodeState) -> NodeState:
        current = self.get(cluster_id, node)
        if current == state:
            return current
        if state.rank < current.rank or (
            current in ROLE_STATES and state in ROLE_STATES
        ):
            raise StateTransitionError(
                f"Node {node} cannot go from {current.value} to {state.value}"
            )

        history = self.history(cluster_id, node)
        history.append(
            {"state": state.value, "at": datetime.now(timezone.utc).isoformat()}
        )
        path = self.path(cluster_id, node)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"state": state.value, "history": history}, indent=2))
        logger.info(f"Node {node}: {current.value} -> {state.value}")
        return state

    def summary(self, cluster_id: str) -> dict[str, NodeState]:
        nodes_dir = self.state_dir / cluster_id / "nodes"
        if not nodes_dir.is_dir():
            return {}
        return {
            path.stem: self.get(cluster_id, path.stem)
            for path in sorted(nodes_dir.glob("*.json"))
        }

    @staticmethod
    def _load(path: Path) -> dict | None:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
            NodeState(data["state"])
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Corrupt node state record {path}: {e!r}") from e
        return data
