import sys
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import common
from common import command_exists, log_callback, run_command
from errors import DeployError, ProvisioningError


def test_run_command_captures_output(capsys) -> None:
    result = run_command(
        [sys.executable, "-c", "import os; print(os.environ['GREETING'])"],
        env={"GREETING": "hello"},
        capture_output=True,
    )

    assert result.stdout.strip() == "hello"
    assert "--> Executing:" in capsys.readouterr().out


def test_run_command_raises_given_error() -> None:
    with pytest.raises(ProvisioningError, match="no such plan"):
        run_command(
            [sys.executable, "-c", "import sys; sys.exit('no such plan')"],
            capture_output=True,
            error=ProvisioningError,
        )


def test_run_command_unchecked() -> None:
    result = run_command([sys.executable, "-c", "raise SystemExit(3)"], check=False)

    assert result.returncode == 3


def test_run_command_missing_binary() -> None:
    with pytest.raises(DeployError, match="not found"):
        run_command(["definitely-not-a-command-kubeadm-deploy"])


def test_command_exists() -> None:
    assert not command_exists("definitely-not-a-command-kubeadm-deploy")


def test_log_callback(monkeypatch) -> None:
    logger = MagicMock()
    monkeypatch.setattr(common, "logger", logger)

    log_callback(SimpleNamespace(stdout="created", stderr="warning"))

    messages = [call.args[0] for call in logger.info.call_args_list]
    assert "created" in messages
    assert "warning" in messages
