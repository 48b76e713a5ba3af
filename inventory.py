# inventory.py
# See: https://docs.pyinfra.com/en/3.x/inventory-data.html
#
# Groups are read from the node file rendered by kubeadm-apply:
#   KUBEADM_DEPLOY_NODES=~/.kubeadm-deploy/dev/nodes.yaml pyinfra inventory.py ...

import os

from config import NODES_ENV
from models import NodeRole
from nodes_file import pyinfra_hosts, read_nodes_file

__all__ = ["masters", "workers"]

_nodes = read_nodes_file(os.environ[NODES_ENV])

masters = pyinfra_hosts(_nodes, NodeRole.MASTER)
workers = pyinfra_hosts(_nodes, NodeRole.WORKER)
