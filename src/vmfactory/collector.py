"""Interactive parameter collection for the VM factory wizard."""

import logging
import os
from typing import Any, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from vmfactory.config import Config
from vmfactory.errors import PreconditionError, ValidationError
from vmfactory.hypervisor import HypervisorClient, select_free_vmid
from vmfactory.models import AuthMode, NetworkConfig, OSImage, Secret, VMSpec
from vmfactory import validators

logger = logging.getLogger(__name__)


class Prompter:
    """Console prompts with inline defaults. Blank input selects the default."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def say(self, message: Any = "") -> None:
        self.console.print(message)

    def ask(self, prompt: str, default: str = "") -> str:
        answer = Prompt.ask(prompt, default=default, show_default=bool(default), console=self.console)
        return (answer or "").strip()

    def secret(self, prompt: str) -> str:
        return Prompt.ask(prompt, password=True, default="", show_default=False, console=self.console)

    def confirm(self, prompt: str, default: bool) -> bool:
        return Confirm.ask(prompt, default=default, console=self.console)

    def choose(self, title: str, options: Sequence[str], default: int = 1) -> str:
        """Show a numbered menu and return the raw answer (1-based)."""
        self.say(title)
        for idx, option in enumerate(options, start=1):
            self.say(f"  {idx}) {option}")
        return self.ask("Choice", str(default))


class ParameterCollector:
    """Asks the operator for every VM setting and validates as it goes.

    Any invalid answer raises immediately; there is no re-prompt.
    """

    def __init__(self, client: HypervisorClient, prompter: Prompter, runner):
        self.client = client
        self.prompter = prompter
        self.runner = runner

    def collect(self) -> VMSpec:
        node = self.select_host()
        environment = self.select_environment()
        role = self.select_role()
        site = self.prompter.ask("Site/location code", Config.DEFAULT_SITE)
        base_name = f"{Config.NAME_PREFIX}-{environment}-{role}-{site}"
        name = self.prompter.ask("VM name", f"{base_name}-01")

        vmid = self.select_vmid()

        profile = Config.profile_for(environment)
        cores = validators.require_positive_int(
            self.prompter.ask("CPU cores", str(profile["cores"])), "CPU cores"
        )
        memory_gb = validators.require_positive_int(
            self.prompter.ask("Memory (in GB)", str(profile["memory_gb"])), "Memory (GB)"
        )
        disk_gb = validators.require_positive_int(
            self.prompter.ask("Disk size (in GB)", str(profile["disk_gb"])), "Disk size (GB)"
        )

        storage, storage_type = self.select_storage()
        bridge = self.prompter.ask("Bridge name", Config.DEFAULT_BRIDGE)
        image = self.select_image()

        user = self.prompter.ask("VM username", Config.DEFAULT_USER)
        auth = self.select_auth_mode()
        ssh_key = self.read_ssh_key_path() if auth.uses_key else ""
        password = self.read_password() if auth.uses_password else Secret("")

        network = self.select_network()

        return VMSpec(
            vmid=vmid,
            name=name,
            cores=cores,
            memory_gb=memory_gb,
            disk_gb=disk_gb,
            storage=storage,
            storage_type=storage_type,
            bridge=bridge,
            image=image,
            user=user,
            auth=auth,
            network=network,
            password=password,
            ssh_key=ssh_key,
            node=node,
            environment=environment,
            role=role,
            site=site,
            tag_prefix=Config.TAG_PREFIX,
        )

    def select_host(self) -> str:
        """Pick the target node; the wizard must already be running on it."""
        nodes = self.client.list_nodes()
        if not nodes:
            raise PreconditionError(f"No Proxmox nodes found under {Config.NODES_DIR}.")
        current = self.runner.hostname()

        self.prompter.say("Available Proxmox Hosts:")
        for idx, node in enumerate(nodes, start=1):
            self.prompter.say(f"  {idx}) {node}")
        answer = self.prompter.ask("Select host to create VM on", current)

        if answer == current:
            target = current
        else:
            target = nodes[validators.require_choice(answer, len(nodes), "Host choice")]

        if target != current:
            raise PreconditionError(
                f"You selected host '{target}' but this script is running on '{current}'. "
                f"Please SSH into {target} and run it there: ssh root@{target}"
            )
        logger.info(f"Host verified: running on correct node ({target}).")
        return target

    def select_environment(self) -> str:
        answer = self.prompter.choose(
            "Choose environment:", Config.ENVIRONMENTS, Config.ENVIRONMENTS.index(Config.DEFAULT_ENVIRONMENT) + 1
        )
        return self._pick(Config.ENVIRONMENTS, answer, Config.DEFAULT_ENVIRONMENT)

    def select_role(self) -> str:
        answer = self.prompter.choose("Choose role:", Config.ROLES, Config.ROLES.index(Config.DEFAULT_ROLE) + 1)
        role = self._pick(Config.ROLES, answer, Config.DEFAULT_ROLE)
        if role == "other":
            role = self.prompter.ask("Enter custom role (e.g. suitecrm)", "util") or "util"
        return role

    def select_vmid(self) -> int:
        default = select_free_vmid(self.client, Config.VMID_START, Config.VMID_END)
        vmid = validators.require_positive_int(self.prompter.ask("VM ID", str(default)), "VM ID")
        if vmid != default and self.client.vm_exists(vmid):
            raise ValidationError("VM ID", f"VM ID {vmid} already exists. Choose a different VMID.")
        return vmid

    def select_storage(self) -> Tuple[str, str]:
        pools = self.client.list_storages()
        if not pools:
            raise PreconditionError("No storages found from 'pvesm status'.")

        table = Table(title="Available storages")
        table.add_column("#", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Available (GiB)", justify="right")
        for idx, pool in enumerate(pools, start=1):
            table.add_row(str(idx), pool.name, pool.type, pool.status, f"{pool.available / 1024**2:.1f}")
        self.prompter.say(table)

        answer = self.prompter.ask("Select storage for disk & cloud-init", "1")
        pool = pools[validators.require_choice(answer, len(pools), "Storage choice")]
        logger.info(f"Using storage: {pool.name} ({pool.type})")
        return pool.name, pool.type

    def select_image(self) -> OSImage:
        images = [OSImage(**entry) for entry in Config.IMAGES]
        answer = self.prompter.choose("Choose OS image:", [f"{i.name} cloudimg" for i in images], 1)
        chosen = self._pick(images, answer, images[0])
        logger.info(f"Using image: {chosen.url}")
        return chosen

    def select_auth_mode(self) -> AuthMode:
        modes = [AuthMode.PASSWORD, AuthMode.KEY, AuthMode.BOTH]
        answer = self.prompter.choose("Authentication mode:", [m.label for m in modes], 1)
        return self._pick(modes, answer, AuthMode.PASSWORD)

    def read_ssh_key_path(self) -> str:
        default = Config.DEFAULT_SSH_PUBKEY
        if self.prompter.confirm(f"Use default SSH public key at {default}?", True):
            path = default
        else:
            path = self.prompter.ask("Enter path to SSH public key file")
        path = os.path.expanduser(path)
        if not os.path.isfile(path):
            raise ValidationError("SSH key", f"SSH key file '{path}' not found.")
        return path

    def read_password(self) -> Secret:
        first = self.prompter.secret("VM password")
        second = self.prompter.secret("Confirm password")
        if first != second:
            raise ValidationError("Password", "Passwords do not match.")
        if not first:
            raise ValidationError("Password", "Password must not be empty.")
        return Secret(first)

    def select_network(self) -> NetworkConfig:
        if not self.prompter.confirm("Use static IP instead of DHCP?", False):
            return NetworkConfig.dhcp()
        ip = validators.require_ip(self.prompter.ask("Static IP (e.g. 10.1.10.200)"), "Static IP")
        cidr = validators.require_cidr(self.prompter.ask("CIDR prefix (e.g. 24 for /24)"))
        gateway = validators.require_ip(self.prompter.ask("Gateway IP (e.g. 10.1.10.1)"), "Gateway IP")
        return NetworkConfig(ip=ip, cidr=cidr, gateway=gateway)

    @staticmethod
    def _pick(options: List, answer: str, fallback):
        """Lenient menu lookup: anything that is not a valid number picks the fallback."""
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            return options[int(answer) - 1]
        return fallback
