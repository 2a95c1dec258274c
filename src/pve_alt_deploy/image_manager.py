"""
Disk image acquisition.

The image lives in a cache directory on the execution target and is reused
across runs. A fresh download is verified against the published checksum
(when one is configured) before anything touches the hypervisor.
"""

import logging
import posixpath
import shlex
from typing import Optional

import requests

from pve_alt_deploy.config import YANDEX_DOWNLOAD_API
from pve_alt_deploy.executor import Executor
from pve_alt_deploy.models import CommandError, DeploymentConfig, DownloadError, IntegrityError

logger = logging.getLogger(__name__)

IMAGE_NAME = "alt-workstation.qcow2"
DIGEST_SUFFIX = ".sha256"


class ImageManager:
    """Fetches the Alt Workstation image into the target's cache directory."""

    def __init__(
        self,
        executor: Executor,
        cache_dir: str,
        api_token: Optional[str] = None,
        api_url: str = YANDEX_DOWNLOAD_API,
        api_timeout: int = 30,
    ):
        """
        Args:
            executor: Execution backend for the target host
            cache_dir: Cache directory on the target
            api_token: Bearer token enabling the authenticated download fallback
            api_url: Endpoint resolving a public link to a direct download link
            api_timeout: Timeout in seconds for the link resolution request
        """
        self.executor = executor
        self.cache_dir = cache_dir
        self.api_token = api_token
        self.api_url = api_url
        self.api_timeout = api_timeout

    @property
    def cache_path(self) -> str:
        return posixpath.join(self.cache_dir, IMAGE_NAME)

    def acquire(self, config: DeploymentConfig) -> str:
        """
        Return the path of a usable image on the target, downloading on cache miss.

        Raises:
            DownloadError: If every download method fails
            IntegrityError: If the fresh download does not match its checksum
        """
        path = self.cache_path
        if self.executor.path_exists(path):
            logger.info(f"📦 Using cached image: {path}")
            return path

        logger.info(f"⬇️  Downloading Alt Workstation image to {path}")
        self.download(config.image_url, path)
        digest = self.record_digest(path)
        self.verify(config, path, digest)
        return path

    def download(self, url: str, dest: str) -> None:
        """Fetch ``url`` to ``dest``, falling back to the authenticated link when a token is set."""
        error = self._fetch_into_cache(url, dest)
        if error is None:
            logger.info(f"✅ Image downloaded successfully to: {dest}")
            return

        if not self.api_token:
            raise DownloadError(f"Failed to download image from {url}: {error}")

        logger.warning("Direct download failed, resolving an authenticated download link")
        direct_url = self.resolve_download_link(url)
        error = self._fetch_into_cache(direct_url, dest)
        if error is not None:
            raise DownloadError(f"Failed to download image via authenticated link: {error}")
        logger.info(f"✅ Image downloaded successfully to: {dest}")

    def resolve_download_link(self, public_url: str) -> str:
        """
        Ask the storage API for a time-limited direct link to ``public_url``.

        Raises:
            DownloadError: If the API call fails or returns no link
        """
        try:
            response = requests.get(
                self.api_url,
                params={"public_key": public_url},
                headers={"Authorization": f"OAuth {self.api_token}"},
                timeout=self.api_timeout,
            )
            response.raise_for_status()
            href = response.json().get("href")
        except (requests.RequestException, ValueError) as e:
            raise DownloadError(f"Could not resolve download link for {public_url}: {e}")

        if not href:
            raise DownloadError(f"Download API returned no link for {public_url}")
        return href

    def _fetch_into_cache(self, url: str, dest: str) -> Optional[str]:
        """Download into a temp dir on the target and move into place. Returns an error or None."""
        temp_dir = self.executor.run("mktemp -d")
        temp_file = posixpath.join(temp_dir, posixpath.basename(dest))
        try:
            result = self.executor.execute(f"wget -q -O {shlex.quote(temp_file)} {shlex.quote(url)}")
            if not result.ok:
                return result.stderr.strip() or f"wget exited with status {result.exit_status}"
            self.executor.run(f"mv {shlex.quote(temp_file)} {shlex.quote(dest)}")
            return None
        finally:
            self.executor.execute(f"rm -rf {shlex.quote(temp_dir)}")

    def record_digest(self, path: str) -> str:
        """Compute the sha256 of ``path`` on the target and store it next to the image."""
        output = self.executor.run(f"sha256sum {shlex.quote(path)}")
        digest = output.split()[0].lower() if output else ""
        line = f"{digest}  {posixpath.basename(path)}"
        self.executor.run(f"echo {shlex.quote(line)} > {shlex.quote(path + DIGEST_SUFFIX)}")
        return digest

    def verify(self, config: DeploymentConfig, path: str, digest: str) -> None:
        """
        Compare ``digest`` against the published checksum.

        A missing checksum URL or an unreachable checksum file only warns.

        Raises:
            IntegrityError: On mismatch; the image stays in the cache
        """
        if not config.checksum_url:
            logger.warning("Checksum verification skipped - no checksum URL provided")
            return

        logger.info("🔍 Verifying image checksum...")
        expected = self._fetch_expected_digest(config.checksum_url)
        if expected is None:
            logger.warning("Checksum verification skipped - cannot download checksum file")
            return

        if expected != digest:
            raise IntegrityError(path, expected, digest)
        logger.info("✅ Checksum verification passed")

    def _fetch_expected_digest(self, url: str) -> Optional[str]:
        try:
            temp_dir = self.executor.run("mktemp -d")
        except CommandError as e:
            logger.debug(f"mktemp failed: {e}")
            return None

        checksum_file = posixpath.join(temp_dir, IMAGE_NAME + DIGEST_SUFFIX)
        try:
            result = self.executor.execute(f"wget -q -O {shlex.quote(checksum_file)} {shlex.quote(url)}")
            if not result.ok:
                return None
            content = self.executor.execute(f"cat {shlex.quote(checksum_file)}")
            if not content.ok or not content.stdout.strip():
                return None
            # sha256sum format: "<digest>  <file name>"
            return content.stdout.split()[0]
        finally:
            self.executor.execute(f"rm -rf {shlex.quote(temp_dir)}")
