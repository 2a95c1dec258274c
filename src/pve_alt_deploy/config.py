import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from dotenv import dotenv_values, load_dotenv

from pve_alt_deploy.models import DeploymentConfig, PreconditionError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, str] = {
    "VM_ID": "100",
    "VM_NAME": "alt-workstation",
    "VM_MEMORY": "4096",
    "VM_CORES": "2",
    "VM_DISK_SIZE": "32G",
    "VM_BRIDGE": "vmbr0",
    "VM_STORAGE": "local-lvm",
    "ALT_IMAGE_URL": "https://mega.nz/file/H1YXCCJQ#1gK8XMUOVYkfWKj2Rbloocyve7cq1d2_ahXIao7IiK8",
    "ALT_IMAGE_CHECKSUM": "https://mega.nz/file/XwAWELqT#kv2_OysAz3NcfXmuBXhqHes0UmZzABkRYCCC2nqtVMg",
}

# Insecure first-boot credentials, used only when the config leaves them unset
DEFAULT_CLOUD_INIT_USER = "alt"
DEFAULT_CLOUD_INIT_PASSWORD = "alt@123"

YANDEX_DOWNLOAD_API = "https://cloud-api.yandex.net/v1/disk/public/resources/download"


@dataclass
class Settings:
    """Process-wide settings read from the environment (and ``.env``)."""

    config_path: str = "config/alt-workstation.conf"
    templates_dir: str = "templates"
    cache_dir: str = "/var/cache/pve-alt-deploy"
    pve_host: Optional[str] = None
    pve_user: str = "root"
    pve_ssh_key: str = "~/.ssh/id_rsa"
    ssh_connect_timeout: int = 5
    api_token: Optional[str] = None
    download_api_url: str = YANDEX_DOWNLOAD_API
    snippets_storage: str = "local"
    snippets_dir: str = "/var/lib/vz/snippets"
    setup_node_script: str = "scripts/setup-pve-node.sh"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables, honoring a local ``.env``."""
        load_dotenv()
        timeout = os.getenv("SSH_CONNECT_TIMEOUT", str(cls.ssh_connect_timeout))
        try:
            ssh_connect_timeout = int(timeout)
        except ValueError:
            raise PreconditionError(
                f"SSH_CONNECT_TIMEOUT must be a whole number of seconds, got {timeout!r}"
            ) from None
        return cls(
            config_path=os.getenv("ALT_DEPLOY_CONFIG", cls.config_path),
            templates_dir=os.getenv("ALT_DEPLOY_TEMPLATES_DIR", cls.templates_dir),
            cache_dir=os.getenv("ALT_DEPLOY_CACHE_DIR", cls.cache_dir),
            pve_host=os.getenv("PVE_HOST") or None,
            pve_user=os.getenv("PVE_USER", cls.pve_user),
            pve_ssh_key=os.getenv("PVE_SSH_KEY", cls.pve_ssh_key),
            ssh_connect_timeout=ssh_connect_timeout,
            api_token=os.getenv("YANDEX_DISK_TOKEN") or None,
            download_api_url=os.getenv("DOWNLOAD_API_URL", cls.download_api_url),
            snippets_storage=os.getenv("SNIPPETS_STORAGE", cls.snippets_storage),
            snippets_dir=os.getenv("SNIPPETS_DIR", cls.snippets_dir),
            setup_node_script=os.getenv("SETUP_NODE_SCRIPT", cls.setup_node_script),
        )


def load_config(
    path: Union[str, Path, None],
    vm_id: Optional[str] = None,
    vm_name: Optional[str] = None,
) -> DeploymentConfig:
    """
    Resolve the deployment configuration.

    Values come from the shell-style config file at ``path`` when it exists,
    otherwise from DEFAULT_CONFIG. Keys missing from the file fall back to the
    defaults as well. Non-empty ``vm_id``/``vm_name`` override both.

    Args:
        path: Config file path, or None to use defaults
        vm_id: Explicit VM id override
        vm_name: Explicit VM name override

    Returns:
        Immutable DeploymentConfig
    """
    values: Dict[str, Optional[str]] = dict(DEFAULT_CONFIG)

    if path is not None and Path(path).is_file():
        file_values = dotenv_values(path)
        values.update({key: value for key, value in file_values.items() if value is not None})
        logger.info(f"📄 Configuration loaded from: {path}")
    else:
        logger.warning(f"Using default configuration - config file not found: {path}")

    if vm_id:
        values["VM_ID"] = str(vm_id)
    if vm_name:
        values["VM_NAME"] = vm_name

    return DeploymentConfig(
        vm_id=(values.get("VM_ID") or "").strip(),
        vm_name=(values.get("VM_NAME") or "").strip(),
        memory=values.get("VM_MEMORY") or "",
        cores=values.get("VM_CORES") or "",
        disk_size=values.get("VM_DISK_SIZE") or "",
        bridge=values.get("VM_BRIDGE") or "",
        storage=values.get("VM_STORAGE") or "",
        image_url=values.get("ALT_IMAGE_URL") or "",
        checksum_url=values.get("ALT_IMAGE_CHECKSUM") or None,
        cloud_init_user=values.get("CLOUD_INIT_USER") or None,
        cloud_init_password=values.get("CLOUD_INIT_PASSWORD") or None,
    )
