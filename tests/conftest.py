from types import SimpleNamespace

import pytest

from config import Settings
from context import DeployContext
from join_command import parse_join_command

TOKEN = "abcdef.0123456789abcdef"
CA_HASH = "sha256:" + "0f" * 32
JOIN_OUTPUT = (
    f"kubeadm join 10.0.0.5:6443 --token {TOKEN} "
    f"--discovery-token-ca-cert-hash {CA_HASH} \n"
)


class FakeHost:
    """Just enough of ``pyinfra.api.Host`` for the deploy steps."""

    def __init__(self, name="10.0.0.5", data=None, facts=None, responses=None):
        self.name = name
        self.data = dict(data or {})
        self.groups = []
        # ``(FactClass.__name__, argument)`` -> value
        self.facts = dict(facts or {})
        # command prefix -> list of ``(status, stdout, stderr)``, consumed in order
        self.responses = {
            prefix: list(results) for prefix, results in (responses or {}).items()
        }
        self.commands = []

    def get_fact(self, fact, *args, **kwargs):
        argument = args[0] if args else kwargs.get("path")
        return self.facts.get((fact.__name__, argument))

    def run_shell_command(self, command, **kwargs):
        self.commands.append(command)
        for prefix, results in self.responses.items():
            if command.startswith(prefix) and results:
                status, stdout, stderr = (
                    results.pop(0) if len(results) > 1 else results[0]
                )
                return status, SimpleNamespace(stdout=stdout, stderr=stderr)
        return True, SimpleNamespace(stdout="", stderr="")


@pytest.fixture
def join_output():
    return JOIN_OUTPUT


@pytest.fixture
def join_command():
    return parse_join_command(JOIN_OUTPUT)


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.delenv("KUBEADM_DEPLOY_STATE_DIR", raising=False)
    return Settings(environment="dev", cluster_id="dev", state_dir=tmp_path / "state")


@pytest.fixture
def ctx(settings):
    return DeployContext.from_settings(settings)
