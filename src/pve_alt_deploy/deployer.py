"""Main deployment pipeline: image → VM → cloud-init → start."""

import logging

from pve_alt_deploy.cloud_init import CloudInitConfigurator
from pve_alt_deploy.config import Settings
from pve_alt_deploy.executor import Executor, check_prerequisites
from pve_alt_deploy.image_manager import ImageManager
from pve_alt_deploy.models import DeploymentConfig, DeploymentResult, PreconditionError
from pve_alt_deploy.vm_manager import VMManager
from pve_alt_deploy.vm_starter import VMStarter

logger = logging.getLogger(__name__)


class Deployer:
    """Runs the deployment stages in order against one executor."""

    def __init__(self, executor: Executor, settings: Settings):
        self.executor = executor
        self.settings = settings
        self.images = ImageManager(
            executor,
            settings.cache_dir,
            api_token=settings.api_token,
            api_url=settings.download_api_url,
        )
        self.vms = VMManager(executor)
        self.cloud_init = CloudInitConfigurator(
            executor,
            settings.templates_dir,
            snippets_storage=settings.snippets_storage,
            snippets_dir=settings.snippets_dir,
        )
        self.starter = VMStarter(executor)

    def download_only(self, config: DeploymentConfig) -> str:
        """Fetch (or reuse) the image and return its path on the target."""
        check_prerequisites(self.executor, self.settings.cache_dir)
        return self.images.acquire(config)

    def deploy(self, config: DeploymentConfig) -> DeploymentResult:
        """
        Deploy the VM described by ``config``.

        Any DeployError aborts the run; VM state created so far is kept.
        A VM that does not reach "running" in time is reported, not raised.
        """
        if not config.vm_id or not config.vm_name:
            raise PreconditionError("VM id and name must not be empty")

        logger.info("🚀 Starting Alt Workstation deployment")
        logger.info(f"Mode: {'local' if self.executor.target.is_local else 'remote'} ({self.executor.describe()})")
        logger.info(f"VM ID: {config.vm_id}")
        logger.info(f"VM Name: {config.vm_name}")
        logger.info(f"Memory: {config.memory}")
        logger.info(f"Cores: {config.cores}")

        check_prerequisites(self.executor, self.settings.cache_dir)

        image_path = self.images.acquire(config)
        self.vms.provision(config, image_path)
        self.cloud_init.configure(config.vm_id, config)

        running, ip = self.starter.start_vm(config.vm_id)

        console_url = f"https://{self.executor.hostname()}:8006/?console=kvm&novnc=1&vmid={config.vm_id}"
        logger.info("✅ Alt Workstation deployment completed successfully!")
        logger.info(f"VM Console: {console_url}")

        return DeploymentResult(
            vm_id=config.vm_id,
            vm_name=config.vm_name,
            image_path=image_path,
            running=running,
            console_url=console_url,
            ip_address=ip,
        )
