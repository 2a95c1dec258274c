"""Data models and errors for Alt Workstation deployment."""

import os
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class DeploymentConfig:
    """Desired state of the VM to deploy. Loaded once per run."""

    vm_id: str
    vm_name: str
    memory: str
    cores: str
    disk_size: str
    bridge: str
    storage: str
    image_url: str
    checksum_url: Optional[str] = None
    cloud_init_user: Optional[str] = None
    cloud_init_password: Optional[str] = None


@dataclass(frozen=True)
class ExecutionTarget:
    """Host on which hypervisor commands run. ``host=None`` means local."""

    host: Optional[str] = None
    user: str = "root"
    key_path: str = "~/.ssh/id_rsa"

    @property
    def is_local(self) -> bool:
        return self.host is None

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}" if self.host else "local"

    @property
    def key_file(self) -> str:
        return os.path.expanduser(self.key_path)

    @classmethod
    def parse(cls, address: str, key_path: str = "~/.ssh/id_rsa") -> "ExecutionTarget":
        """Build a remote target from ``user@host`` or a bare ``host``."""
        address = address.strip()
        if not address:
            raise ValueError("Remote host must not be empty")
        user, sep, host = address.rpartition("@")
        if not sep:
            user, host = "root", address
        if not host:
            raise ValueError(f"Remote host missing in {address!r}")
        return cls(host=host, user=user or "root", key_path=key_path)


@dataclass
class CommandResult:
    """Outcome of a single command on the execution target."""

    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class DeploymentResult:
    """Summary of a finished deployment."""

    vm_id: str
    vm_name: str
    image_path: str
    running: bool
    console_url: str
    ip_address: Optional[str] = None


class DeployError(Exception):
    """Base exception for deployment errors."""

    pass


class PreconditionError(DeployError):
    """Raised before any mutating action when the environment is unusable."""

    pass


class VMExistsError(PreconditionError):
    """Raised when the target VM id is already taken."""

    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(f"VM {vm_id} already exists")


class CommandError(DeployError):
    """Raised when a command exits non-zero on the execution target."""

    def __init__(self, command: str, exit_status: int, stderr: str):
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        detail = stderr.strip() or "no error output"
        super().__init__(f"Command failed ({exit_status}): {command}\n{detail}")


class DownloadError(DeployError):
    """Raised when the disk image cannot be fetched."""

    pass


class IntegrityError(DeployError):
    """Raised when the downloaded image does not match its published checksum."""

    def __init__(self, path: str, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum verification failed for {path}: expected {expected}, got {actual}"
        )


class ProvisioningError(DeployError):
    """Raised when a hypervisor step fails mid-provisioning. Nothing is rolled back."""

    def __init__(self, step: str, vm_id: str, completed: List[str], cause: Exception):
        self.step = step
        self.vm_id = vm_id
        self.completed = list(completed)
        self.cause = cause
        if completed:
            hint = (
                f"completed: {', '.join(completed)}. The VM is left partially configured; "
                f"remove it with 'qm destroy {vm_id}' before retrying."
            )
        else:
            hint = "no changes were applied."
        super().__init__(f"Provisioning of VM {vm_id} failed at step '{step}', {hint}\n{cause}")
