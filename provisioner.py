"""
Node provisioning, before any host is touched by the deploy.

The actual infrastructure is owned by Terraform or the Hetzner Cloud API,
this only drives them and turns their result into a list of nodes.
"""

import json
import os

from hcloud import APIException, Client
from hcloud.images import Image
from hcloud.locations import Location
from hcloud.server_types import ServerType

from common import colors, print_color, run_command
from config import Settings
from errors import ConfigError, ProvisioningError
from models import Node, NodeRole, validate_nodes

CLUSTER_LABEL = "kubeadm-deploy/cluster"
ROLE_LABEL = "kubeadm-deploy/role"


def provision(settings: Settings) -> list[Node]:
    if settings.provider == "terraform":
        nodes = terraform_apply(settings)
    elif settings.provider == "hetzner":
        nodes = HetznerProvisioner(settings).provision()
    else:
        nodes = list(settings.nodes)

    try:
        validate_nodes(nodes)
    except ConfigError as e:
        raise ProvisioningError(f"Provider {settings.provider!r}: {e.message}") from e
    return nodes


#
# Terraform
#
def terraform_apply(settings: Settings) -> list[Node]:
    """terraform init, plan and apply, then read the nodes from its outputs."""
    workdir = settings.terraform_dir
    if workdir is None or not workdir.is_dir():
        raise ProvisioningError(f"Terraform directory not found: {workdir}")

    for command in (
        ["terraform", "init", "-input=false"],
        ["terraform", "plan", "-input=false"],
        ["terraform", "apply", "-auto-approve", "-input=false"],
    ):
        run_command(command, cwd=workdir, error=ProvisioningError)

    result = run_command(
        ["terraform", "output", "-json"],
        cwd=workdir,
        capture_output=True,
        error=ProvisioningError,
    )
    try:
        outputs = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        raise ProvisioningError(
            "Could not parse terraform output", output=result.stdout
        ) from e
    return nodes_from_terraform_outputs(outputs, settings.node_defaults)


def _output_value(outputs: dict, name: str):
    output = outputs.get(name)
    if isinstance(output, dict) and "value" in output:
        return output["value"]
    return output


def nodes_from_terraform_outputs(outputs: dict, defaults: dict) -> list[Node]:
    """Read either a ``nodes`` output or ``master_ip`` + ``worker_ips``."""
    raw_nodes = _output_value(outputs, "nodes")
    if raw_nodes:
        try:
            return [Node.from_dict(raw, defaults) for raw in raw_nodes]
        except ConfigError as e:
            raise ProvisioningError(f"Invalid 'nodes' terraform output: {e}") from e

    master_ip = _output_value(outputs, "master_ip")
    if not master_ip:
        raise ProvisioningError(
            "Terraform outputs must define 'nodes' or 'master_ip' + 'worker_ips'"
        )
    nodes = [
        Node.from_dict(
            {"name": "master1", "role": "master", "address": master_ip}, defaults
        )
    ]
    for index, address in enumerate(_output_value(outputs, "worker_ips") or [], start=1):
        nodes.append(
            Node.from_dict(
                {"name": f"worker{index}", "role": "worker", "address": address},
                defaults,
            )
        )
    return nodes


#
# Hetzner Cloud
#
class HetznerProvisioner:
    def __init__(self, settings: Settings, client: Client | None = None):
        self.settings = settings
        self.hetzner = settings.hetzner
        if client is None:
            token = os.getenv(self.hetzner.token_env)
            if not token:
                raise ProvisioningError(
                    f"{self.hetzner.token_env} must be set to use the hetzner provider"
                )
            client = Client(token=token)
        self.client = client

    def provision(self) -> list[Node]:
        if not self.hetzner.servers:
            raise ProvisioningError("hetzner.servers is empty")

        existing = {server.name: server for server in self.list_servers()}
        nodes = []
        for entry in self.hetzner.servers:
            name = str(entry["name"])
            try:
                role = NodeRole(str(entry.get("role", "worker")).lower())
            except ValueError as e:
                raise ProvisioningError(f"Unknown role for server {name}: {e}") from e
            server = existing.get(name)
            if server is None:
                server = self.create_server(name, role)
            else:
                print_color(colors.GREEN, f"Server {name} already exists. Re-using.")
            nodes.append(
                Node.from_dict(
                    {
                        "name": name,
                        "role": role.value,
                        "address": server.public_net.ipv4.ip,
                    },
                    self.settings.node_defaults,
                )
            )
        return nodes

    def list_servers(self):
        try:
            return self.client.servers.get_all(
                label_selector=f"{CLUSTER_LABEL}={self.settings.cluster_id}"
            )
        except APIException as e:
            raise ProvisioningError(f"Could not list Hetzner servers: {e}") from e

    def create_server(self, name: str, role: NodeRole):
        print_color(colors.YELLOW, f"Creating server {name} ({role.value})")
        ssh_keys = [
            self.client.ssh_keys.get_by_name(key_name)
            for key_name in self.hetzner.ssh_keys
        ]
        try:
            response = self.client.servers.create(
                name=name,
                server_type=ServerType(name=self.hetzner.server_type),
                image=Image(name=self.hetzner.image),
                ssh_keys=[key for key in ssh_keys if key is not None],
                location=(
                    Location(name=self.hetzner.location)
                    if self.hetzner.location
                    else None
                ),
                labels={
                    CLUSTER_LABEL: self.settings.cluster_id,
                    ROLE_LABEL: role.value,
                },
            )
            response.action.wait_until_finished()
        except APIException as e:
            raise ProvisioningError(f"Could not create server {name}: {e}") from e
        return response.server
