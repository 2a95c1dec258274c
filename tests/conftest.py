"""Shared test fixtures for pve-alt-deploy tests."""

from typing import Dict, List, Optional, Tuple
from unittest import mock

import pytest

from pve_alt_deploy.config import Settings
from pve_alt_deploy.executor import Executor
from pve_alt_deploy.models import CommandResult, DeploymentConfig, ExecutionTarget


class FakeExecutor(Executor):
    """Records every command and answers from scripted responses.

    Responses are matched by command prefix; the most recently added
    matching rule wins. Unmatched commands succeed with empty output.
    """

    def __init__(self, target: Optional[ExecutionTarget] = None, host: str = "pve-test"):
        self.target = target or ExecutionTarget()
        self.host = host
        self.commands: List[str] = []
        self.transfers: List[Tuple[str, str]] = []
        self.transferred_content: Dict[str, str] = {}
        self._rules: List[Tuple[str, List[CommandResult]]] = []

    def respond(self, prefix: str, stdout: str = "", exit_status: int = 0, stderr: str = "") -> None:
        """Always answer commands starting with ``prefix`` this way."""
        self._rules.append((prefix, [CommandResult(prefix, stdout, stderr, exit_status)]))

    def respond_sequence(self, prefix: str, results: List[Tuple[str, int]]) -> None:
        """Answer successive matching commands with (stdout, exit_status) pairs; the last repeats."""
        self._rules.append((prefix, [CommandResult(prefix, out, "", status) for out, status in results]))

    def execute(self, command: str) -> CommandResult:
        self.commands.append(command)
        for prefix, results in reversed(self._rules):
            if command.startswith(prefix):
                result = results.pop(0) if len(results) > 1 else results[0]
                return CommandResult(command, result.stdout, result.stderr, result.exit_status)
        return CommandResult(command, "", "", 0)

    def transfer(self, local_path: str, remote_path: str) -> None:
        self.transfers.append((local_path, remote_path))
        with open(local_path) as f:
            self.transferred_content[remote_path] = f.read()

    def hostname(self) -> str:
        return self.host

    def called(self, prefix: str) -> List[str]:
        return [cmd for cmd in self.commands if cmd.startswith(prefix)]

    def index_of(self, prefix: str) -> int:
        for idx, cmd in enumerate(self.commands):
            if cmd.startswith(prefix):
                return idx
        raise AssertionError(f"no command starting with {prefix!r} in {self.commands}")


@pytest.fixture
def fake_executor():
    """Executor that records commands instead of running them."""
    executor = FakeExecutor()
    executor.respond("mktemp -d", "/tmp/tmp.abc123\n")
    executor.respond("qm list", "      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID\n")
    return executor


@pytest.fixture
def sample_config() -> DeploymentConfig:
    """Deployment config matching the built-in defaults."""
    return DeploymentConfig(
        vm_id="100",
        vm_name="alt-workstation",
        memory="4096",
        cores="2",
        disk_size="32G",
        bridge="vmbr0",
        storage="local-lvm",
        image_url="https://example.com/alt-workstation.qcow2",
        checksum_url="https://example.com/alt-workstation.qcow2.sha256",
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at temporary directories."""
    return Settings(
        config_path=str(tmp_path / "alt-workstation.conf"),
        templates_dir=str(tmp_path / "templates"),
        cache_dir="/var/cache/pve-alt-deploy",
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment variables that Settings.from_env reads."""
    for var in [
        "ALT_DEPLOY_CONFIG",
        "ALT_DEPLOY_TEMPLATES_DIR",
        "ALT_DEPLOY_CACHE_DIR",
        "PVE_HOST",
        "PVE_USER",
        "PVE_SSH_KEY",
        "SSH_CONNECT_TIMEOUT",
        "YANDEX_DISK_TOKEN",
        "DOWNLOAD_API_URL",
        "SNIPPETS_STORAGE",
        "SNIPPETS_DIR",
        "SETUP_NODE_SCRIPT",
    ]:
        monkeypatch.delenv(var, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.setattr("pve_alt_deploy.config.load_dotenv", lambda *args, **kwargs: False)


@pytest.fixture
def mock_ssh_client():
    """Mock paramiko SSH client for testing remote operations."""
    with mock.patch("pve_alt_deploy.executor.paramiko.SSHClient") as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client

        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value = b"command output\n"
        stderr.read.return_value = b""
        stdout.channel.recv_exit_status.return_value = 0

        client.exec_command.return_value = (None, stdout, stderr)

        yield client
