"""Start a VM and wait for it to report running."""

import json
import logging
import re
import shlex
import time
from typing import Callable, Optional, Tuple

from pve_alt_deploy.executor import Executor

logger = logging.getLogger(__name__)

_SRC_ADDR_RE = re.compile(r"\bsrc\s+(\S+)")


class VMStarter:
    """Issues ``qm start`` and polls ``qm status`` a fixed number of times."""

    def __init__(
        self,
        executor: Executor,
        interval: float = 2,
        max_attempts: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.interval = interval
        self.max_attempts = max_attempts
        self.sleep = sleep

    def start_and_wait(self, vm_id: str) -> Optional[str]:
        """
        Start the VM and wait until it runs.

        Returns:
            The guest's primary IP if the guest agent answered, else None.
            Timing out is not an error; it is logged as a warning.
        """
        _, ip = self.start_vm(vm_id)
        return ip

    def start_vm(self, vm_id: str) -> Tuple[bool, Optional[str]]:
        """Start the VM and return (running, ip)."""
        vm_id = str(vm_id)
        logger.info(f"▶️  Starting VM {vm_id}")
        self.executor.run(f"qm start {shlex.quote(vm_id)}")

        if not self.wait_until_running(vm_id):
            logger.warning("VM started but may not be fully ready yet")
            return False, None

        logger.info(f"✅ VM {vm_id} is now running")
        ip = self.get_ip(vm_id)
        if ip:
            logger.info(f"🌐 VM IP address: {ip}")
        return True, ip

    def wait_until_running(self, vm_id: str) -> bool:
        for _ in range(self.max_attempts):
            result = self.executor.execute(f"qm status {shlex.quote(str(vm_id))}")
            if result.ok and "running" in result.stdout:
                return True
            self.sleep(self.interval)
        return False

    def get_ip(self, vm_id: str) -> Optional[str]:
        """Ask the guest agent for the source address of the default route."""
        result = self.executor.execute(f"qm guest exec {shlex.quote(str(vm_id))} -- ip route get 1")
        if not result.ok:
            logger.debug(f"Guest agent not ready on VM {vm_id}: {result.stderr.strip()}")
            return None

        output = result.stdout
        try:
            # qm guest exec returns JSON with the command output in "out-data"
            output = json.loads(output).get("out-data", "")
        except (ValueError, AttributeError):
            pass

        match = _SRC_ADDR_RE.search(output or "")
        return match.group(1) if match else None
