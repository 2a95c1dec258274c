"""
Command execution on the Proxmox host.

Every stage of the deployment talks to the hypervisor through an Executor,
so the same pipeline runs directly on a Proxmox node (LocalExecutor) or from
a workstation over SSH (RemoteExecutor).
"""

import logging
import os
import shlex
import shutil
import socket
import subprocess
from abc import ABC, abstractmethod
from typing import Optional

import paramiko

from pve_alt_deploy.config import Settings
from pve_alt_deploy.models import CommandError, CommandResult, ExecutionTarget, PreconditionError

logger = logging.getLogger(__name__)

PVE_VERSION_FILE = "/etc/pve/version"


class Executor(ABC):
    """Runs shell commands and copies files onto the execution target."""

    target: ExecutionTarget

    @abstractmethod
    def execute(self, command: str) -> CommandResult:
        """Run a shell command and return its result without raising on failure."""

    @abstractmethod
    def transfer(self, local_path: str, remote_path: str) -> None:
        """Copy a local file to ``remote_path`` on the target."""

    @abstractmethod
    def hostname(self) -> str:
        """Name of the Proxmox host, as used for the web console."""

    def run(self, command: str) -> str:
        """
        Run a command and return its stripped stdout.

        Raises:
            CommandError: If the command exits non-zero (stderr is kept verbatim)
        """
        result = self.execute(command)
        if not result.ok:
            raise CommandError(command, result.exit_status, result.stderr)
        return result.stdout.strip()

    def path_exists(self, path: str) -> bool:
        """Check whether a regular file exists on the target."""
        return self.execute(f"test -f {shlex.quote(path)}").ok

    def describe(self) -> str:
        return self.target.address

    def close(self) -> None:
        pass

    def __enter__(self) -> "Executor":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LocalExecutor(Executor):
    """Runs commands in the current process environment."""

    def __init__(self) -> None:
        self.target = ExecutionTarget()

    def execute(self, command: str) -> CommandResult:
        logger.debug(f"local$ {command}")
        proc = subprocess.run(command, shell=True, capture_output=True, text=True)
        return CommandResult(
            command=command,
            stdout=proc.stdout,
            stderr=proc.stderr,
            exit_status=proc.returncode,
        )

    def transfer(self, local_path: str, remote_path: str) -> None:
        logger.debug(f"Copying {local_path} -> {remote_path}")
        shutil.copyfile(local_path, remote_path)

    def hostname(self) -> str:
        return socket.gethostname()


class RemoteExecutor(Executor):
    """Runs commands on a Proxmox host over an SSH session."""

    def __init__(self, target: ExecutionTarget, connect_timeout: int = 5) -> None:
        if target.is_local:
            raise ValueError("RemoteExecutor requires a target host")
        self.target = target
        self.connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None

    def _connect(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            hostname=self.target.host,
            username=self.target.user,
            key_filename=self.target.key_file,
            timeout=self.connect_timeout,
        )
        return client

    def _get_client(self) -> paramiko.SSHClient:
        if self._client is None:
            self._client = self._connect()
        return self._client

    def probe(self) -> bool:
        """Check that the host accepts our key within the connect timeout."""
        try:
            result = self.execute("exit")
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"SSH probe of {self.target.address} failed: {e}")
            self.close()
            return False
        return result.ok

    def execute(self, command: str) -> CommandResult:
        logger.debug(f"[{self.target.address}]$ {command}")
        ssh = self._get_client()
        stdin, stdout, stderr = ssh.exec_command(command)
        out = stdout.read().decode()
        err = stderr.read().decode()
        return CommandResult(
            command=command,
            stdout=out,
            stderr=err,
            exit_status=stdout.channel.recv_exit_status(),
        )

    def transfer(self, local_path: str, remote_path: str) -> None:
        logger.debug(f"Uploading {local_path} -> {self.target.address}:{remote_path}")
        sftp = self._get_client().open_sftp()
        try:
            sftp.put(local_path, remote_path)
        finally:
            sftp.close()

    def hostname(self) -> str:
        return self.target.host or ""

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def is_proxmox_host() -> bool:
    """True when this machine is a Proxmox VE node."""
    return (
        os.path.isfile(PVE_VERSION_FILE)
        or shutil.which("pvesh") is not None
        or shutil.which("qm") is not None
    )


def ensure_ssh_access(target: ExecutionTarget) -> None:
    """
    Make key-based SSH login to ``target`` possible.

    Generates an RSA key pair at the target's key path when missing and
    installs the public key on the host with ssh-copy-id (which may prompt
    for the host password).

    Raises:
        PreconditionError: If the key cannot be installed
    """
    key_file = target.key_file
    if not os.path.isfile(key_file):
        logger.info(f"🔑 Generating SSH key {key_file}")
        os.makedirs(os.path.dirname(key_file), mode=0o700, exist_ok=True)
        key = paramiko.RSAKey.generate(4096)
        key.write_private_key_file(key_file)
        with open(f"{key_file}.pub", "w") as pub:
            pub.write(f"{key.get_name()} {key.get_base64()} pve-alt-deploy\n")

    logger.info(f"Setting up SSH access to {target.address}")
    try:
        subprocess.run(
            ["ssh-copy-id", "-i", f"{key_file}.pub", target.address],
            check=True,
            timeout=120,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
        raise PreconditionError(
            f"Failed to set up SSH access ({e}). Configure it manually: "
            f"ssh-copy-id -i {key_file}.pub {target.address}"
        )
    logger.info("SSH access configured successfully")


def select_executor(
    settings: Settings,
    remote: Optional[str] = None,
    force_local: bool = False,
    setup_access: bool = False,
) -> Executor:
    """
    Pick the execution target for this run.

    Args:
        settings: Process settings (default remote host, user, key)
        remote: Explicit ``user@host`` target
        force_local: Run locally without probing for Proxmox
        setup_access: Try ensure_ssh_access when the first probe fails

    Returns:
        A ready-to-use executor

    Raises:
        PreconditionError: If neither a local Proxmox node nor a reachable
            remote host is available
    """
    if force_local:
        logger.info("Running in local mode (forced)")
        return LocalExecutor()

    if not remote and is_proxmox_host():
        logger.info("🖥️  Running on Proxmox host")
        return LocalExecutor()

    if remote:
        try:
            target = ExecutionTarget.parse(remote, key_path=settings.pve_ssh_key)
        except ValueError as e:
            raise PreconditionError(f"Invalid --remote target: {e}") from e
    elif settings.pve_host:
        target = ExecutionTarget(host=settings.pve_host, user=settings.pve_user, key_path=settings.pve_ssh_key)
    else:
        raise PreconditionError(
            "Not running on a Proxmox host and no remote host configured. "
            "Run on a Proxmox node, set PVE_HOST with SSH key access, "
            "or pass --remote user@proxmox-host."
        )

    executor = RemoteExecutor(target, connect_timeout=settings.ssh_connect_timeout)
    if not executor.probe():
        if not setup_access:
            raise PreconditionError(f"Remote Proxmox host {target.address} is unreachable over SSH")
        ensure_ssh_access(target)
        if not executor.probe():
            raise PreconditionError(f"Remote Proxmox host {target.address} is unreachable over SSH")

    logger.info(f"🔗 Connected to remote Proxmox host: {target.host}")
    return executor


def check_prerequisites(executor: Executor, cache_dir: str) -> None:
    """
    Verify the hypervisor tooling exists on the target and create the cache dir.

    Raises:
        PreconditionError: If a required tool is missing
    """
    logger.info("Checking prerequisites...")
    tools = ["qm", "wget", "sha256sum"]
    if executor.target.is_local:
        tools.append("curl")

    for tool in tools:
        if not executor.execute(f"command -v {tool} >/dev/null 2>&1").ok:
            raise PreconditionError(f"{tool} not found on {executor.describe()}")

    executor.run(f"mkdir -p {shlex.quote(cache_dir)}")
