"""
Bootstrap a kubeadm cluster: prepare every node, initialize the master,
then join the workers with the command published by the master.

Normally started by kubeadm-apply, which provisions the nodes and renders
the inventory first:

kubeadm-apply dev

or, with an already rendered inventory:

KUBEADM_DEPLOY_CONFIG=environments/dev.yaml \
KUBEADM_DEPLOY_NODES=~/.kubeadm-deploy/dev/nodes.yaml \
pyinfra -y -v inventory.py deploy-cluster.py
"""

from pyinfra import host

import bootstrap
import control_plane
import workers
from context import load_context


def main() -> None:
    ctx = load_context()

    if not ctx.regenerate_only:
        bootstrap.main(ctx)

    if "masters" in host.groups:
        control_plane.main(ctx)

    if ctx.regenerate_only:
        return

    # Declared after the master steps, so executed after them on all hosts.
    if "workers" in host.groups:
        workers.main(ctx)

    if "masters" in host.groups:
        control_plane.report_cluster(ctx)


main()
