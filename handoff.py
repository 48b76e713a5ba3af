"""
Hand-off of the join command from the master to the workers.

The master publishes the join command once per run, every worker reads it.
Records live on the machine driving the deploy, one JSON file per cluster:

    <state_dir>/<cluster_id>/join.json
"""

import json
import os
import re
import tempfile
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pyinfra import logger

from errors import ConfigError, TokenRetrievalError
from join_command import JoinCommand, parse_join_command

DURATION_RE = re.compile(r"(\d+)([hms])")
DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


def parse_duration(value: str) -> int:
    """kubeadm style durations: '24h', '1h30m', '90s'. '0' never expires."""
    value = str(value).strip()
    if value == "0":
        return 0
    matches = DURATION_RE.findall(value)
    if not matches or "".join(n + u for n, u in matches) != value:
        raise ConfigError(f"Invalid duration: {value!r}")
    return sum(int(n) * DURATION_UNITS[u] for n, u in matches)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JoinRecord:
    cluster_id: str
    command: str
    created_at: str
    expires_at: str | None
    generation: int

    def join_command(self) -> JoinCommand:
        return parse_join_command(self.command)

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.expires_at:
            return False
        return (now or _now()) >= datetime.fromisoformat(self.expires_at)


class HandoffStore:
    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)

    def path(self, cluster_id: str) -> Path:
        return self.state_dir / cluster_id / "join.json"

    def publish(
        self, cluster_id: str, join_command: JoinCommand, ttl: str = "24h"
    ) -> JoinRecord:
        previous = self.get(cluster_id)
        created = _now()
        seconds = parse_duration(ttl)
        record = JoinRecord(
            cluster_id=cluster_id,
            command=join_command.command,
            created_at=created.isoformat(),
            expires_at=(
                (created + timedelta(seconds=seconds)).isoformat() if seconds else None
            ),
            generation=previous.generation + 1 if previous else 1,
        )
        self._write(self.path(cluster_id), asdict(record))
        logger.info(
            f"Published join command for cluster {cluster_id} "
            f"(generation {record.generation}): {join_command.redacted()}"
        )
        return record

    def get(self, cluster_id: str) -> JoinRecord | None:
        path = self.path(cluster_id)
        if not path.exists():
            return None
        try:
            return JoinRecord(**json.loads(path.read_text()))
        except (TypeError, ValueError) as e:
            raise TokenRetrievalError(f"Corrupt join record {path}: {e}") from e

    def read(self, cluster_id: str) -> JoinRecord:
        record = self.get(cluster_id)
        if record is None:
            raise TokenRetrievalError(
                f"No join command published for cluster {cluster_id!r}. "
                "The master must be initialized first."
            )
        return record

    def wait_for(
        self, cluster_id: str, timeout: int = 0, interval: float = 5
    ) -> JoinRecord:
        """Block until a record is present, up to ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        while True:
            record = self.get(cluster_id)
            if record is not None:
                return record
            if time.monotonic() >= deadline:
                return self.read(cluster_id)
            logger.info(f"Waiting for the join command of cluster {cluster_id}...")
            time.sleep(interval)

    @staticmethod
    def _write(path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".join-")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
