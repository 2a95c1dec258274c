#!/usr/bin/env python3
"""
Create the Alt Workstation VM on Proxmox with the qm CLI.

Steps run strictly in order and each must succeed before the next starts.
A failure leaves whatever was already applied in place.
"""

import logging
import re
import shlex
from typing import Callable, List, Tuple

from pve_alt_deploy.executor import Executor
from pve_alt_deploy.models import (
    CommandError,
    DeploymentConfig,
    PreconditionError,
    ProvisioningError,
    VMExistsError,
)

logger = logging.getLogger(__name__)

VM_DESCRIPTION = "Alt Workstation deployed via pve-alt-deploy"
BOOT_DISK = "scsi0"

# qm importdisk prints e.g. "Successfully imported disk as 'unused0:local-lvm:vm-100-disk-0'"
_IMPORTED_DISK_RE = re.compile(r"imported disk as '(?:unused\d+:)?([^']+)'")


class VMManager:
    """Drives qm through VM creation for a single deployment."""

    def __init__(self, executor: Executor):
        self.executor = executor

    def _qm(self, *args: str) -> str:
        return self.executor.run("qm " + " ".join(shlex.quote(str(arg)) for arg in args))

    def vm_exists(self, vm_id: str) -> bool:
        """Return True if ``qm list`` reports a VM with this id."""
        listing = self._qm("list")
        for line in listing.splitlines():
            fields = line.split()
            if fields and fields[0] == str(vm_id):
                return True
        return False

    def provision(self, config: DeploymentConfig, image_path: str) -> None:
        """
        Create and configure the VM described by ``config`` from ``image_path``.

        Raises:
            PreconditionError: If id/name are missing
            VMExistsError: If the VM id is taken
            ProvisioningError: If a qm step fails
        """
        if not config.vm_id or not config.vm_name:
            raise PreconditionError("VM id and name must be set before creating a VM")

        vm_id = config.vm_id
        logger.info(f"🆕 Creating VM {vm_id} ({config.vm_name})")
        if self.vm_exists(vm_id):
            raise VMExistsError(vm_id)

        completed: List[str] = []
        volume = ""

        def import_disk() -> None:
            nonlocal volume
            volume = self.import_disk(config, image_path)

        steps: List[Tuple[str, Callable[[], None]]] = [
            ("create", lambda: self.create(config)),
            ("import disk", import_disk),
            ("attach disk", lambda: self._qm("set", vm_id, f"--{BOOT_DISK}", volume)),
        ]
        if config.disk_size:
            steps.append(("resize disk", lambda: self.resize(vm_id, config.disk_size)))
        steps += [
            ("configure display", lambda: self._qm(
                "set", vm_id, "--vga", "std", "--serial0", "socket", "--serial1", "socket"
            )),
            ("enable guest agent", lambda: self._qm("set", vm_id, "--agent", "1")),
            ("set boot order", lambda: self._qm("set", vm_id, "--boot", f"order={BOOT_DISK}")),
        ]

        for name, step in steps:
            try:
                step()
            except CommandError as e:
                logger.error(f"❌ Step '{name}' failed for VM {vm_id}")
                raise ProvisioningError(name, vm_id, completed, e) from e
            completed.append(name)

        logger.info(f"✅ VM {vm_id} created successfully")

    def create(self, config: DeploymentConfig) -> None:
        self._qm(
            "create", config.vm_id,
            "--name", config.vm_name,
            "--memory", config.memory,
            "--cores", config.cores,
            "--net0", f"virtio,bridge={config.bridge}",
            "--scsihw", "virtio-scsi-pci",
            "--bootdisk", BOOT_DISK,
            "--ostype", "l26",
            "--description", VM_DESCRIPTION,
        )

    def import_disk(self, config: DeploymentConfig, image_path: str) -> str:
        """Import the image into the VM's storage and return the resulting volume id."""
        logger.info("💾 Importing disk image...")
        output = self._qm("importdisk", config.vm_id, image_path, config.storage)
        match = _IMPORTED_DISK_RE.search(output)
        if match:
            return match.group(1)
        return f"{config.storage}:vm-{config.vm_id}-disk-0"

    def resize(self, vm_id: str, size: str) -> None:
        """Grow the boot disk to ``size``. qm cannot shrink disks."""
        logger.info(f"🔧 Resizing disk to {size}")
        self._qm("resize", vm_id, BOOT_DISK, size)
