"""First-boot configuration via Proxmox cloud-init."""

import logging
import os
import posixpath
import shlex
import tempfile
from pathlib import Path
from typing import Dict, Union

from pve_alt_deploy.config import DEFAULT_CLOUD_INIT_PASSWORD, DEFAULT_CLOUD_INIT_USER
from pve_alt_deploy.executor import Executor
from pve_alt_deploy.models import DeploymentConfig

logger = logging.getLogger(__name__)

TEMPLATE_NAME = "cloud-init.yaml"


def render_template(src_path: Union[str, Path], context: Dict[str, str]) -> str:
    """Read src_path, replace all {{ key }} with context[key], and return the result."""
    text = Path(src_path).read_text()
    for key, val in context.items():
        text = text.replace(f"{{{{ {key} }}}}", val)
    return text


class CloudInitConfigurator:
    """Attaches a cloud-init drive and custom user data to a new VM."""

    def __init__(
        self,
        executor: Executor,
        templates_dir: Union[str, Path],
        snippets_storage: str = "local",
        snippets_dir: str = "/var/lib/vz/snippets",
    ):
        self.executor = executor
        self.template_path = Path(templates_dir) / TEMPLATE_NAME
        self.snippets_storage = snippets_storage
        self.snippets_dir = snippets_dir

    def configure(self, vm_id: str, config: DeploymentConfig) -> bool:
        """
        Configure cloud-init for ``vm_id``.

        Does nothing when the local template is missing.

        Returns:
            True if cloud-init was configured, False if skipped
        """
        if not self.template_path.is_file():
            logger.warning(f"Cloud-init configuration skipped - template not found: {self.template_path}")
            return False

        logger.info("☁️  Configuring cloud-init...")
        user = config.cloud_init_user or DEFAULT_CLOUD_INIT_USER
        password = config.cloud_init_password or DEFAULT_CLOUD_INIT_PASSWORD
        if not config.cloud_init_password:
            logger.warning("Using the default cloud-init password - change it for production use")

        self._qm_set(vm_id, "--ide2", f"{config.storage}:cloudinit")
        self._qm_set(vm_id, "--cipassword", password)
        self._qm_set(vm_id, "--ciuser", user)

        snippet = self.upload_user_data(vm_id, config, user)
        self._qm_set(vm_id, "--cicustom", f"user={self.snippets_storage}:snippets/{snippet}")
        return True

    def upload_user_data(self, vm_id: str, config: DeploymentConfig, user: str) -> str:
        """Render the template and copy it into the snippets directory. Returns the snippet name."""
        snippet = f"alt-{vm_id}-user-data.yaml"
        remote_path = posixpath.join(self.snippets_dir, snippet)
        rendered = render_template(
            self.template_path,
            {"vm_id": str(vm_id), "vm_name": config.vm_name, "ci_user": user},
        )

        self.executor.run(f"mkdir -p {shlex.quote(self.snippets_dir)}")
        fd, local_path = tempfile.mkstemp(suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(rendered)
            self.executor.transfer(local_path, remote_path)
        finally:
            os.unlink(local_path)

        logger.info(f"⬆️  Uploaded user data to {remote_path}")
        return snippet

    def _qm_set(self, vm_id: str, option: str, value: str) -> None:
        self.executor.run(f"qm set {shlex.quote(str(vm_id))} {option} {shlex.quote(value)}")
