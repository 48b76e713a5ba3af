"""
Errors raised while provisioning and bootstrapping the cluster.

The diagnostic output of the underlying tool (terraform, apt, kubeadm, ...)
is kept verbatim in ``output``.
"""


class DeployError(Exception):
    def __init__(self, message: str, output: str | None = None):
        super().__init__(message)
        self.message = message
        self.output = output

    def __str__(self) -> str:
        if self.output and self.output.strip():
            return f"{self.message}\n{self.output.strip()}"
        return self.message


class ConfigError(DeployError):
    """Invalid environment file or settings."""


class ProvisioningError(DeployError):
    """Infrastructure could not be created or read. Aborts the whole run."""


class PackageInstallError(DeployError):
    """A bootstrap step failed on a node."""


class TokenRetrievalError(DeployError):
    """No join command is available for the workers."""


class JoinError(DeployError):
    """A worker could not join the cluster."""

    def __init__(
        self,
        message: str,
        output: str | None = None,
        node: str | None = None,
        reason: str = "join",
    ):
        super().__init__(message, output)
        self.node = node
        self.reason = reason


class StateTransitionError(DeployError):
    """A node state record cannot move backward."""
