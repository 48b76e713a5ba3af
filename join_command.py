"""
The join command printed by ``kubeadm token create --print-join-command``.

The command is executed verbatim on the workers, the parsed fields are only
used to validate it and to log it without leaking the token secret.
"""

import re
import shlex
from dataclasses import dataclass, field

from errors import TokenRetrievalError

TOKEN_RE = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
CA_HASH_RE = re.compile(r"^sha256:[0-9a-fA-F]+$")


@dataclass(frozen=True)
class JoinCommand:
    command: str
    endpoint: str
    token: str
    ca_cert_hashes: list[str] = field(default_factory=list)

    @property
    def token_id(self) -> str:
        return self.token.split(".", 1)[0]

    def redacted(self) -> str:
        return self.command.replace(self.token, f"{self.token_id}.<redacted>")

    def __str__(self) -> str:
        return self.command


def parse_join_command(output: str) -> JoinCommand:
    """Extract and validate the join command from the kubeadm output."""
    lines = [line.strip() for line in output.splitlines() if " join " in line]
    if not lines:
        raise TokenRetrievalError(
            "No join command found in kubeadm output", output=output
        )
    command = lines[-1]
    try:
        parts = shlex.split(command)
    except ValueError as e:
        raise TokenRetrievalError(f"Unparsable join command: {e}") from e

    join_at = parts.index("join")
    positional = [
        part
        for index, part in enumerate(parts[join_at + 1 :], start=join_at + 1)
        if not part.startswith("-") and not _takes_value(parts[index - 1])
    ]
    if not positional:
        raise TokenRetrievalError("Join command has no API server endpoint")
    endpoint = positional[0]

    token = _option_values(parts, "--token")
    if len(token) != 1 or not TOKEN_RE.match(token[0]):
        raise TokenRetrievalError("Join command has no valid --token")

    hashes = _option_values(parts, "--discovery-token-ca-cert-hash")
    if not hashes or not all(CA_HASH_RE.match(value) for value in hashes):
        raise TokenRetrievalError(
            "Join command has no valid --discovery-token-ca-cert-hash"
        )

    return JoinCommand(
        command=command,
        endpoint=endpoint,
        token=token[0],
        ca_cert_hashes=hashes,
    )


def _option_values(parts: list[str], option: str) -> list[str]:
    values = []
    for index, part in enumerate(parts):
        if part == option and index + 1 < len(parts):
            values.append(parts[index + 1])
        elif part.startswith(f"{option}="):
            values.append(part.split("=", 1)[1])
    return values


def _takes_value(part: str) -> bool:
    return part.startswith("--") and "=" not in part
