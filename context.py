import os
from dataclasses import dataclass

from pyinfra import host

from config import (
    CONFIG_ENV,
    ENVIRONMENT_ENV,
    FORCE_ENV,
    REGENERATE_ENV,
    Settings,
    load_settings,
)
from errors import ConfigError
from handoff import HandoffStore
from node_state import NodeStateStore

TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class DeployContext:
    """Everything the deploy steps share for one run."""

    settings: Settings
    handoff: HandoffStore
    node_states: NodeStateStore
    force: bool = False
    regenerate_only: bool = False

    @property
    def cluster_id(self) -> str:
        return self.settings.cluster_id

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "DeployContext":
        return cls(
            settings=settings,
            handoff=HandoffStore(settings.state_dir),
            node_states=NodeStateStore(settings.state_dir),
            **kwargs,
        )


def load_context(environ=None) -> DeployContext:
    environ = os.environ if environ is None else environ
    config_path = environ.get(CONFIG_ENV)
    if not config_path:
        raise ConfigError(
            f"{CONFIG_ENV} is not set. Run the deploy through kubeadm-apply."
        )
    return DeployContext.from_settings(
        load_settings(config_path, environ.get(ENVIRONMENT_ENV)),
        force=_flag(environ.get(FORCE_ENV)),
        regenerate_only=_flag(environ.get(REGENERATE_ENV)),
    )


def node_name() -> str:
    """Name of the current pyinfra host as known to the provisioner."""
    return host.data.get("node_name") or host.name


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUE_VALUES
