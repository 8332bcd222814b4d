"""Download and integrity-check model artifacts.

``AssetProvisioner.provision`` guarantees that on success the local file
exists and (when freshly downloaded) its MD5 matches the catalog hash. Bytes
are streamed into a temporary file next to the destination and moved into
place with ``os.replace`` only after the hash matches, so a failed or
corrupted transfer never leaves a partial file at the final path.
"""

import hashlib
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Optional

import httpx
import structlog

from libs.common.metrics import MetricsCollector
from ..errors import ProvisioningError
from ..pipelines.retry_handler import RetryConfig, RetryHandler

logger = structlog.get_logger("embedder_service.provisioner")

CHUNK_SIZE = 1 << 20


class ServerSideError(Exception):
    """Remote answered with a 5xx status; worth another attempt."""
    pass


def file_md5(path: Path) -> str:
    """MD5 hex digest of a file, read in chunks."""
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class AssetProvisioner:
    """Ensures model artifacts exist locally and are intact.

    Parameters
    - client: Optional ``httpx.Client``; one is created (and owned) otherwise
    - timeout: Per-request timeout in seconds
    - max_attempts: Attempts per artifact for transient transfer errors
    - verify_cached: Re-hash files already present in the cache
    - retry_handler: Override the backoff policy (mainly for tests)
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        timeout: float = 300.0,
        max_attempts: int = 3,
        verify_cached: bool = False,
        metrics: Optional[MetricsCollector] = None,
        retry_handler: Optional[RetryHandler] = None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self.verify_cached = verify_cached
        self.metrics = metrics
        self.retry_handler = retry_handler or RetryHandler(
            RetryConfig(
                max_attempts=max_attempts,
                base_delay=2.0,
                max_delay=30.0,
                retryable_exceptions=(httpx.TransportError, ServerSideError),
            )
        )

    def provision(self, local_path: Path, remote_url: str, expected_hash: str) -> Path:
        """Make sure ``local_path`` holds the artifact published at ``remote_url``."""
        local_path = Path(local_path)
        expected_hash = expected_hash.lower()

        if local_path.exists():
            if not self.verify_cached:
                logger.debug("Asset already cached", path=str(local_path))
                return local_path
            if file_md5(local_path) == expected_hash:
                logger.debug("Cached asset verified", path=str(local_path))
                return local_path
            logger.warning(
                "Cached asset hash mismatch, downloading again",
                path=str(local_path),
                expected_hash=expected_hash
            )

        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningError(f"unable to create asset folder {local_path.parent}: {e}") from e

        logger.info(
            "Asset does not exist, downloading from remote",
            path=str(local_path),
            url=remote_url
        )
        try:
            self.retry_handler.execute_with_retry(
                self._download,
                local_path,
                remote_url,
                expected_hash,
                operation_name=f"download_{local_path.name}"
            )
        except (httpx.HTTPError, ServerSideError, OSError) as e:
            self._record("error")
            raise ProvisioningError(f"unable to download {remote_url}: {e}") from e

        self._record("success")
        logger.info("Asset downloaded and verified", path=str(local_path))
        return local_path

    def _download(self, local_path: Path, remote_url: str, expected_hash: str) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=local_path.parent,
            prefix=f".{local_path.name}.",
            suffix=".part"
        )
        digest = hashlib.md5()
        try:
            with os.fdopen(fd, "wb") as fh:
                with self.client.stream("GET", remote_url) as response:
                    if response.status_code >= 500:
                        raise ServerSideError(f"server returned {response.status_code}")
                    response.raise_for_status()
                    for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                        fh.write(chunk)
                        digest.update(chunk)

            actual_hash = digest.hexdigest()
            if actual_hash != expected_hash:
                self._record("hash_mismatch")
                raise ProvisioningError(
                    f"hash mismatch for {remote_url}: expected {expected_hash}, got {actual_hash}"
                )
            os.replace(tmp_name, local_path)
        except BaseException:
            with suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def _record(self, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_asset_download(status)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
