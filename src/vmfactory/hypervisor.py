#!/usr/bin/env python3
"""
src/vmfactory/hypervisor.py

Narrow client around the Proxmox VE command-line tools (qm, pvesm).

The wizard only talks to the ``HypervisorClient`` protocol; ``QmClient`` is the
real implementation that shells out through a runner.
"""

import logging
from typing import Any, List, Optional, Protocol

from vmfactory.errors import PreconditionError, VMIDExhaustedError
from vmfactory.models import StoragePool

logger = logging.getLogger(__name__)

# Storage back-ends that keep images as files under a per-VM directory
FILE_STORAGE_TYPES = ("dir", "nfs", "cifs")


def volume_reference(storage: str, storage_type: str, vmid: int, disk_index: int = 0) -> str:
    """
    Build the volume id an imported disk gets on a storage pool.

    File-backed pools (dir, nfs, cifs) store ``<vmid>/vm-<vmid>-disk-N.qcow2``;
    block and volume pools (lvm, lvmthin, zfspool, rbd, ...) use the bare
    ``vm-<vmid>-disk-N`` name.
    """
    disk_name = f"vm-{vmid}-disk-{disk_index}"
    if storage_type in FILE_STORAGE_TYPES:
        return f"{storage}:{vmid}/{disk_name}.qcow2"
    return f"{storage}:{disk_name}"


class HypervisorClient(Protocol):
    """Operations the VM factory needs from the hypervisor."""

    def list_nodes(self) -> List[str]: ...

    def list_storages(self) -> List[StoragePool]: ...

    def storage_type(self, storage: str) -> str: ...

    def storage_supports_snippets(self, storage: str) -> bool: ...

    def vm_exists(self, vmid: int) -> bool: ...

    def create_shell(self, vmid: int, name: str, cores: int, memory_mb: int, bridge: str) -> None: ...

    def import_disk(self, vmid: int, image_path: str, storage: str) -> None: ...

    def list_volumes(self, storage: str) -> List[str]: ...

    def attach_disk(self, vmid: int, volume: str) -> None: ...

    def resize_disk(self, vmid: int, disk: str, size: str) -> None: ...

    def set_options(self, vmid: int, **options: Any) -> None: ...

    def volume_path(self, volume: str) -> str: ...

    def write_snippet(self, path: str, content: str) -> None: ...

    def start(self, vmid: int) -> None: ...

    def destroy(self, vmid: int) -> None: ...


def select_free_vmid(client: HypervisorClient, start: int, end: int) -> int:
    """
    Return the first VMID in ``[start, end]`` with no existing VM.

    Raises:
        VMIDExhaustedError: every id in the window is taken
    """
    for candidate in range(start, end + 1):
        if not client.vm_exists(candidate):
            return candidate
    raise VMIDExhaustedError(start, end)


class QmClient:
    """Proxmox node operations via qm/pvesm on the local (or SSH) runner."""

    def __init__(self, runner: Any, nodes_dir: str = "/etc/pve/nodes"):
        self.runner = runner
        self.nodes_dir = nodes_dir
        self._storages: Optional[List[StoragePool]] = None

    def list_nodes(self) -> List[str]:
        """Cluster members from /etc/pve/nodes, or just this host when standalone."""
        if self.runner.exists(self.nodes_dir):
            return self.runner.listdir(self.nodes_dir)
        return [self.runner.hostname()]

    def list_storages(self) -> List[StoragePool]:
        if self._storages is None:
            out = self.runner.run(["pvesm", "status"]).stdout
            self._storages = self._parse_storage_status(out)
        return self._storages

    @staticmethod
    def _parse_storage_status(output: str) -> List[StoragePool]:
        pools = []
        for line in output.splitlines()[1:]:
            fields = line.split()
            if len(fields) < 2:
                continue
            numbers = [int(f) if f.isdigit() else 0 for f in fields[3:6]]
            numbers += [0] * (3 - len(numbers))
            pools.append(
                StoragePool(
                    name=fields[0],
                    type=fields[1],
                    status=fields[2] if len(fields) > 2 else "unknown",
                    total=numbers[0],
                    used=numbers[1],
                    available=numbers[2],
                )
            )
        return pools

    def storage_type(self, storage: str) -> str:
        for pool in self.list_storages():
            if pool.name == storage:
                return pool.type
        raise PreconditionError(f"Storage {storage!r} not found in pvesm status.")

    def storage_supports_snippets(self, storage: str) -> bool:
        result = self.runner.run(["pvesm", "config", storage], check=False)
        return result.ok and "snippets" in result.stdout

    def vm_exists(self, vmid: int) -> bool:
        return self.runner.run(["qm", "status", str(vmid)], check=False).ok

    def create_shell(self, vmid: int, name: str, cores: int, memory_mb: int, bridge: str) -> None:
        self.runner.run(
            [
                "qm", "create", str(vmid),
                "--name", name,
                "--memory", str(memory_mb),
                "--cores", str(cores),
                "--net0", f"virtio,bridge={bridge}",
                "--ostype", "l26",
            ]
        )

    def import_disk(self, vmid: int, image_path: str, storage: str) -> None:
        result = self.runner.run(["qm", "importdisk", str(vmid), image_path, storage, "--format", "qcow2"])
        if result.stdout.strip():
            logger.debug(result.stdout.strip().splitlines()[-1])

    def list_volumes(self, storage: str) -> List[str]:
        out = self.runner.run(["pvesm", "list", storage]).stdout
        return [line.split()[0] for line in out.splitlines()[1:] if line.strip()]

    def attach_disk(self, vmid: int, volume: str) -> None:
        self.set_options(vmid, scsihw="virtio-scsi-pci", scsi0=volume)

    def resize_disk(self, vmid: int, disk: str, size: str) -> None:
        self.runner.run(["qm", "resize", str(vmid), disk, size])

    def set_options(self, vmid: int, **options: Any) -> None:
        """Run ``qm set`` with one ``--key value`` pair per option, in order.

        Values may be ``Secret``; the runner reveals them only to qm itself.
        """
        args: List[Any] = ["qm", "set", str(vmid)]
        for key, value in options.items():
            args += [f"--{key}", value]
        self.runner.run(args)

    def volume_path(self, volume: str) -> str:
        """Filesystem path of a volume, e.g. a snippet on a dir storage."""
        return self.runner.run(["pvesm", "path", volume]).stdout.strip()

    def write_snippet(self, path: str, content: str) -> None:
        self.runner.write_file(path, content)

    def start(self, vmid: int) -> None:
        self.runner.run(["qm", "start", str(vmid)])

    def destroy(self, vmid: int) -> None:
        self.runner.run(["qm", "destroy", str(vmid), "--purge"])

