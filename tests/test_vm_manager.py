"""Tests for vm_manager module."""

import dataclasses

import pytest

from pve_alt_deploy.models import CommandError, PreconditionError, ProvisioningError, VMExistsError
from pve_alt_deploy.vm_manager import VMManager

IMAGE = "/var/cache/pve-alt-deploy/alt-workstation.qcow2"

QM_LIST = """\
      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID
       100 alt-workstation      running    4096              32.00 1234
      1000 big-id-vm            stopped    2048              10.00 0
"""

IMPORT_OUTPUT = """\
importing disk '/var/cache/pve-alt-deploy/alt-workstation.qcow2' to VM 101 ...
transferred 32.0 GiB of 32.0 GiB (100.00%)
Successfully imported disk as 'unused0:local-lvm:vm-101-disk-0'
"""


def test_vm_exists_found(fake_executor):
    fake_executor.respond("qm list", QM_LIST)
    assert VMManager(fake_executor).vm_exists("100") is True


def test_vm_exists_not_found_with_prefix_match(fake_executor):
    """An id that only prefixes another VM's id is not a match."""
    fake_executor.respond("qm list", QM_LIST)
    assert VMManager(fake_executor).vm_exists("10") is False


def test_vm_exists_empty_listing(fake_executor):
    assert VMManager(fake_executor).vm_exists("100") is False


def test_provision_issues_commands_in_order(fake_executor, sample_config):
    VMManager(fake_executor).provision(sample_config, IMAGE)

    assert fake_executor.commands == [
        "qm list",
        "qm create 100 --name alt-workstation --memory 4096 --cores 2 "
        "--net0 virtio,bridge=vmbr0 --scsihw virtio-scsi-pci --bootdisk scsi0 "
        "--ostype l26 --description 'Alt Workstation deployed via pve-alt-deploy'",
        f"qm importdisk 100 {IMAGE} local-lvm",
        "qm set 100 --scsi0 local-lvm:vm-100-disk-0",
        "qm resize 100 scsi0 32G",
        "qm set 100 --vga std --serial0 socket --serial1 socket",
        "qm set 100 --agent 1",
        "qm set 100 --boot order=scsi0",
    ]


def test_provision_attaches_volume_reported_by_import(fake_executor, sample_config):
    config = dataclasses.replace(sample_config, vm_id="101")
    fake_executor.respond("qm importdisk", IMPORT_OUTPUT)

    VMManager(fake_executor).provision(config, IMAGE)

    assert "qm set 101 --scsi0 local-lvm:vm-101-disk-0" in fake_executor.commands
    assert fake_executor.index_of("qm importdisk") < fake_executor.index_of("qm set 101 --scsi0")


def test_provision_skips_resize_without_disk_size(fake_executor, sample_config):
    config = dataclasses.replace(sample_config, disk_size="")

    VMManager(fake_executor).provision(config, IMAGE)

    assert not fake_executor.called("qm resize")


def test_provision_fails_when_vm_exists(fake_executor, sample_config):
    """Existing VM id aborts before any mutating call."""
    fake_executor.respond("qm list", QM_LIST)

    with pytest.raises(VMExistsError, match="VM 100 already exists"):
        VMManager(fake_executor).provision(sample_config, IMAGE)

    assert fake_executor.commands == ["qm list"]


@pytest.mark.parametrize("field", ["vm_id", "vm_name"])
def test_provision_requires_id_and_name(fake_executor, sample_config, field):
    config = dataclasses.replace(sample_config, **{field: ""})

    with pytest.raises(PreconditionError):
        VMManager(fake_executor).provision(config, IMAGE)

    assert fake_executor.commands == []


def test_import_failure_stops_before_attach(fake_executor, sample_config):
    fake_executor.respond("qm importdisk", exit_status=255, stderr="storage 'local-lvm' does not exist")

    with pytest.raises(ProvisioningError) as exc_info:
        VMManager(fake_executor).provision(sample_config, IMAGE)

    error = exc_info.value
    assert error.step == "import disk"
    assert error.completed == ["create"]
    assert "storage 'local-lvm' does not exist" in str(error)
    assert not fake_executor.called("qm set")


def test_create_failure_reports_no_changes(fake_executor, sample_config):
    fake_executor.respond("qm create", exit_status=2, stderr="value 'lots' does not look like a valid integer")

    with pytest.raises(ProvisioningError) as exc_info:
        VMManager(fake_executor).provision(sample_config, IMAGE)

    assert exc_info.value.completed == []
    assert not fake_executor.called("qm importdisk")


def test_failure_leaves_earlier_steps_in_place(fake_executor, sample_config):
    """No rollback: nothing is destroyed after a late failure."""
    fake_executor.respond("qm set 100 --boot", exit_status=1, stderr="boot order error")

    with pytest.raises(ProvisioningError) as exc_info:
        VMManager(fake_executor).provision(sample_config, IMAGE)

    assert exc_info.value.step == "set boot order"
    assert exc_info.value.completed == [
        "create",
        "import disk",
        "attach disk",
        "resize disk",
        "configure display",
        "enable guest agent",
    ]
    assert not fake_executor.called("qm destroy")


def test_qm_list_failure_propagates(fake_executor, sample_config):
    fake_executor.respond("qm list", exit_status=1, stderr="ipcc_send_rec failed")

    with pytest.raises(CommandError, match="ipcc_send_rec failed"):
        VMManager(fake_executor).provision(sample_config, IMAGE)

    assert not fake_executor.called("qm create")
