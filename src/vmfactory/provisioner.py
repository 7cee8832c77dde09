#!/usr/bin/env python3
"""
src/vmfactory/provisioner.py

Create a cloud-init VM on a Proxmox node from a cached cloud image.

The sequence is strictly forward and never resumed. Progress is tracked in a
``Provisioning`` record; ``rollback_guard`` reads that record when anything
escapes the sequence and destroys the VM if (and only if) creation had begun.
"""

import logging
import signal
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional

import yaml

from vmfactory.errors import VMFactoryError
from vmfactory.hypervisor import HypervisorClient, volume_reference
from vmfactory.image_cache import ImageCache, ProgressCallback
from vmfactory.models import VMSpec

logger = logging.getLogger(__name__)


class ProvisionState(Enum):
    """Provisioning stages, in the only order they may occur."""

    NOT_STARTED = "not_started"
    VM_SHELL_CREATED = "vm_shell_created"
    DISK_IMPORTED = "disk_imported"
    DISK_ATTACHED = "disk_attached"
    DISK_RESIZED = "disk_resized"
    CLOUDINIT_CONFIGURED = "cloudinit_configured"
    STARTED = "started"
    DONE = "done"
    FAILED_BEFORE_CREATION = "failed_before_creation"
    FAILED_AFTER_CREATION = "failed_after_creation"


_FORWARD = [
    ProvisionState.NOT_STARTED,
    ProvisionState.VM_SHELL_CREATED,
    ProvisionState.DISK_IMPORTED,
    ProvisionState.DISK_ATTACHED,
    ProvisionState.DISK_RESIZED,
    ProvisionState.CLOUDINIT_CONFIGURED,
    ProvisionState.STARTED,
    ProvisionState.DONE,
]

# States in which a VM record exists on the node but is not finished
_CREATED = set(_FORWARD[1:-1])


@dataclass
class Provisioning:
    """Progress of one provisioning attempt."""

    vmid: int
    state: ProvisionState = ProvisionState.NOT_STARTED
    image_path: Optional[Path] = None
    volume: Optional[str] = None
    rolled_back: bool = False
    rollback_error: Optional[str] = None
    history: List[ProvisionState] = field(default_factory=list)

    @property
    def creation_begun(self) -> bool:
        return self.state in _CREATED

    def advance(self, state: ProvisionState) -> None:
        """Move to the next forward state; skipping or going back is a bug."""
        current = _FORWARD.index(self.state) if self.state in _FORWARD else None
        if current is None or _FORWARD.index(state) != current + 1:
            raise RuntimeError(f"Illegal transition {self.state.name} -> {state.name}")
        logger.debug(f"VM {self.vmid}: {self.state.name} -> {state.name}")
        self.history.append(self.state)
        self.state = state


@contextmanager
def rollback_guard(
    record: Provisioning,
    client: HypervisorClient,
    cleanups: Optional[List[Callable[[], None]]] = None,
) -> Iterator[Provisioning]:
    """
    Destroy a half-built VM when the wrapped block fails.

    On any exception (KeyboardInterrupt and SystemExit included) a record whose
    creation had begun gets exactly one best-effort ``destroy``; failures of
    that call are logged and swallowed so the original error propagates.
    ``cleanups`` run on every exit, successful or not.
    """
    try:
        yield record
    except BaseException:
        if record.creation_begun:
            logger.error(f"An error occurred. Destroying VM {record.vmid}...")
            try:
                client.destroy(record.vmid)
                record.rolled_back = True
            except Exception as e:
                record.rollback_error = str(e)
                logger.warning(f"Rollback of VM {record.vmid} failed (ignored): {e}")
            record.state = ProvisionState.FAILED_AFTER_CREATION
        else:
            record.state = ProvisionState.FAILED_BEFORE_CREATION
        raise
    finally:
        for cleanup in cleanups or []:
            try:
                cleanup()
            except OSError as e:
                logger.warning(f"Cleanup step failed (ignored): {e}")


@contextmanager
def sigterm_as_exit() -> Iterator[None]:
    """Turn SIGTERM into SystemExit(1) so rollback runs like for any other failure."""

    def _handler(signum: int, frame: Any) -> None:
        raise SystemExit(1)

    try:
        previous = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Not the main thread; leave default handling alone
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def render_user_snippet(ssh_pwauth: bool) -> str:
    """Cloud-config user-data that only toggles SSH password login."""
    return "#cloud-config\n" + yaml.safe_dump({"ssh_pwauth": ssh_pwauth}, default_flow_style=False)


class VMProvisioner:
    """Runs the provisioning sequence for one ``VMSpec``."""

    def __init__(self, client: HypervisorClient, image_cache: ImageCache):
        self.client = client
        self.image_cache = image_cache

    def provision(self, spec: VMSpec, progress: Optional[ProgressCallback] = None) -> Provisioning:
        """
        Create, configure and start the VM described by ``spec``.

        Args:
            spec: Collected VM descriptor
            progress: Optional byte-count callback for the image download

        Returns:
            The finished ``Provisioning`` record (state DONE)

        Raises:
            VMFactoryError: any step failed; the VM was destroyed if it existed
        """
        record = Provisioning(vmid=spec.vmid)
        cleanups = [lambda: self.image_cache.discard_partial(spec.image.url)]

        with sigterm_as_exit(), rollback_guard(record, self.client, cleanups):
            record.image_path = self.image_cache.resolve(spec.image.url, progress=progress)
            logger.info(f"Using image file: {record.image_path}")

            self._create_shell(spec, record)
            self._import_disk(spec, record)
            self._attach_disk(spec, record)
            self._resize_disk(spec, record)
            self._configure_cloudinit(spec, record)

            logger.info(f"Starting VM {spec.vmid}...")
            self.client.start(spec.vmid)
            record.advance(ProvisionState.STARTED)

            # Successful from here on; the guard must not destroy the VM
            record.advance(ProvisionState.DONE)

        return record

    def _create_shell(self, spec: VMSpec, record: Provisioning) -> None:
        logger.info(f"Creating VM {spec.vmid} ({spec.name})...")
        self.client.create_shell(spec.vmid, spec.name, spec.cores, spec.memory_mb, spec.bridge)
        record.advance(ProvisionState.VM_SHELL_CREATED)

    def _import_disk(self, spec: VMSpec, record: Provisioning) -> None:
        logger.info(f"Importing disk to storage '{spec.storage}'...")
        self.client.import_disk(spec.vmid, str(record.image_path), spec.storage)
        record.advance(ProvisionState.DISK_IMPORTED)

    def _attach_disk(self, spec: VMSpec, record: Provisioning) -> None:
        volume = volume_reference(spec.storage, spec.storage_type, spec.vmid)
        if volume not in self.client.list_volumes(spec.storage):
            raise VMFactoryError(
                f"Could not find imported disk {volume} on storage '{spec.storage}' "
                f"(storage type {spec.storage_type})."
            )
        logger.info(f"Attaching disk as scsi0 ({volume})...")
        self.client.attach_disk(spec.vmid, volume)
        record.volume = volume
        record.advance(ProvisionState.DISK_ATTACHED)

    def _resize_disk(self, spec: VMSpec, record: Provisioning) -> None:
        logger.info(f"Resizing disk to {spec.disk_size}...")
        self.client.resize_disk(spec.vmid, "scsi0", spec.disk_size)
        record.advance(ProvisionState.DISK_RESIZED)

    def _configure_cloudinit(self, spec: VMSpec, record: Provisioning) -> None:
        vmid, storage = spec.vmid, spec.storage

        self.client.set_options(vmid, efidisk0=f"{storage}:0,pre-enrolled-keys=1")
        self.client.set_options(vmid, ide2=f"{storage}:cloudinit")
        self.client.set_options(vmid, boot="order=scsi0", bootdisk="scsi0")
        self.client.set_options(vmid, serial0="socket", vga="serial0")
        self.client.set_options(vmid, agent="enabled=1")

        self.client.set_options(vmid, ciuser=spec.user)
        if spec.auth.uses_password:
            self.client.set_options(vmid, cipassword=spec.password)
        if spec.auth.uses_key and spec.ssh_key:
            self.client.set_options(vmid, sshkeys=spec.ssh_key)
        logger.info(f"Configuring IP (ipconfig0={spec.network.ipconfig0})...")
        self.client.set_options(vmid, ipconfig0=spec.network.ipconfig0)

        self._apply_user_snippet(spec)

        tags = ",".join(spec.tags)
        logger.info(f"Setting tags: {tags}")
        self.client.set_options(vmid, tags=tags)
        record.advance(ProvisionState.CLOUDINIT_CONFIGURED)

    def _apply_user_snippet(self, spec: VMSpec) -> None:
        if not self.client.storage_supports_snippets(spec.storage):
            logger.warning(
                f"Storage '{spec.storage}' does not advertise 'snippets' content; "
                "ssh_pwauth cannot be explicitly controlled via snippet."
            )
            return

        volume = f"{spec.storage}:snippets/pfs-user-{spec.vmid}.yml"
        path = self.client.volume_path(volume)
        self.client.write_snippet(path, render_user_snippet(spec.ssh_pwauth))
        logger.info(f"Applying custom cloud-init user-data snippet (ssh_pwauth={str(spec.ssh_pwauth).lower()})...")
        self.client.set_options(spec.vmid, cicustom=f"user={volume}")
