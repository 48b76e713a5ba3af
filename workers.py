"""
Worker join, run on the hosts of the ``workers`` group after the master
published its join command.
"""

from pyinfra import host, inventory, logger
from pyinfra.facts.files import File
from pyinfra.operations import python

from config import KUBELET_CONF
from context import DeployContext, node_name
from control_plane import retrieve_join_command
from errors import JoinError, TokenRetrievalError
from handoff import JoinRecord
from models import NodeState

MASTER_GROUP = "masters"

# kubeadm error fragments meaning the bootstrap token is unknown or expired
TOKEN_FAILURE_MARKERS = (
    "could not find a jws signature",
    "token id",
    "invalid bootstrap token",
    "unauthorized",
)


def main(ctx: DeployContext) -> None:
    node = node_name()
    if host.get_fact(File, path=KUBELET_CONF):
        logger.info(f"{node}: already joined ({KUBELET_CONF} present)")
        python.call(
            name=f"Record {NodeState.JOINED.value} for {node}",
            function=ctx.node_states.record,
            cluster_id=ctx.cluster_id,
            node=node,
            state=NodeState.JOINED,
        )
        return

    python.call(
        name=f"Join {node} to the cluster",
        function=join_worker,
        ctx=ctx,
        node=node,
    )


def is_token_failure(output: str | None) -> bool:
    text = (output or "").lower()
    return any(marker in text for marker in TOKEN_FAILURE_MARKERS)


def run_join(target, record: JoinRecord, node: str) -> None:
    """Execute the join command verbatim, leave no partial state on failure."""
    if record.is_expired():
        raise JoinError(
            f"Join command of cluster {record.cluster_id} expired at "
            f"{record.expires_at}. Re-run the master step to regenerate it.",
            node=node,
            reason="token",
        )

    join_command = record.join_command()
    logger.info(f"{node}: joining {join_command.endpoint} ({join_command.redacted()})")
    status, output = target.run_shell_command(join_command.command, _sudo=True)
    if status:
        return

    target.run_shell_command("kubeadm reset --force", _sudo=True)
    raise JoinError(
        f"{node} could not join the cluster at {join_command.endpoint}",
        output=output.stderr,
        node=node,
        reason="token" if is_token_failure(output.stderr) else "join",
    )


def regenerate_join_command(ctx: DeployContext) -> JoinRecord:
    masters = inventory.get_group(MASTER_GROUP)
    if not masters:
        raise TokenRetrievalError(f"No host in the {MASTER_GROUP!r} group")
    join_command = retrieve_join_command(masters[0], ctx.settings.token_ttl)
    return ctx.handoff.publish(ctx.cluster_id, join_command, ttl=ctx.settings.token_ttl)


def join_worker(ctx: DeployContext, node: str, target=None) -> None:
    target = target or host
    record = ctx.handoff.wait_for(
        ctx.cluster_id, timeout=ctx.settings.join_wait_timeout
    )

    attempts = ctx.settings.join_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            run_join(target, record, node)
            break
        except JoinError as e:
            if e.reason != "token" or attempt == attempts:
                raise
            logger.warning(
                f"{node}: join token rejected (attempt {attempt}/{attempts}), "
                "regenerating it on the master"
            )
            record = regenerate_join_command(ctx)

    ctx.node_states.record(ctx.cluster_id, node, NodeState.JOINED)
