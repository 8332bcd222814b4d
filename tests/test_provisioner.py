"""Tests for asset provisioning: download, integrity check and caching."""

import hashlib

import httpx
import pytest

from app.assets.provisioner import AssetProvisioner, ServerSideError, file_md5
from app.errors import ProvisioningError
from app.pipelines.retry_handler import RetryConfig, RetryHandler
from libs.common.metrics import MetricsCollector

URL = "https://assets.example.com/onnx/RN50/textual.onnx"
PAYLOAD = b"onnx-graph-bytes" * 1000
PAYLOAD_MD5 = hashlib.md5(PAYLOAD).hexdigest()


class Remote:
    """Scripted responses for ``httpx.MockTransport``."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


def _provisioner(remote, verify_cached=False, metrics=None):
    client = httpx.Client(transport=httpx.MockTransport(remote))
    retry = RetryHandler(
        RetryConfig(max_attempts=3, retryable_exceptions=(httpx.TransportError, ServerSideError)),
        sleep=lambda delay: None,
    )
    return AssetProvisioner(client=client, verify_cached=verify_cached, metrics=metrics, retry_handler=retry)


def _leftovers(folder):
    return sorted(p.name for p in folder.iterdir() if p.name.endswith(".part"))


def test_download_writes_verified_file(tmp_path):
    remote = Remote(httpx.Response(200, content=PAYLOAD))
    metrics = MetricsCollector("test")
    target = tmp_path / "RN50" / "textual.onnx"

    result = _provisioner(remote, metrics=metrics).provision(target, URL, PAYLOAD_MD5)

    assert result == target
    assert target.read_bytes() == PAYLOAD
    assert file_md5(target) == PAYLOAD_MD5
    assert _leftovers(target.parent) == []
    assert metrics.registry.get_sample_value("ml_asset_downloads_total", {"status": "success"}) == 1.0


def test_expected_hash_is_case_insensitive(tmp_path):
    target = tmp_path / "textual.onnx"

    _provisioner(Remote(httpx.Response(200, content=PAYLOAD))).provision(target, URL, PAYLOAD_MD5.upper())

    assert target.exists()


def test_hash_mismatch_leaves_no_file(tmp_path):
    remote = Remote(httpx.Response(200, content=b"truncated"))
    metrics = MetricsCollector("test")
    target = tmp_path / "textual.onnx"

    with pytest.raises(ProvisioningError, match="hash mismatch"):
        _provisioner(remote, metrics=metrics).provision(target, URL, PAYLOAD_MD5)

    assert not target.exists()
    assert _leftovers(tmp_path) == []
    assert len(remote.requests) == 1
    assert metrics.registry.get_sample_value("ml_asset_downloads_total", {"status": "hash_mismatch"}) == 1.0


def test_cached_file_is_trusted_without_network(tmp_path):
    remote = Remote(httpx.Response(200, content=PAYLOAD))
    target = tmp_path / "textual.onnx"
    target.write_bytes(b"anything already there")

    _provisioner(remote).provision(target, URL, PAYLOAD_MD5)

    assert remote.requests == []
    assert target.read_bytes() == b"anything already there"


def test_verify_cached_replaces_corrupt_file(tmp_path):
    remote = Remote(httpx.Response(200, content=PAYLOAD))
    target = tmp_path / "textual.onnx"
    target.write_bytes(b"corrupt")

    _provisioner(remote, verify_cached=True).provision(target, URL, PAYLOAD_MD5)

    assert len(remote.requests) == 1
    assert target.read_bytes() == PAYLOAD


def test_verify_cached_keeps_intact_file(tmp_path):
    remote = Remote(httpx.Response(200, content=PAYLOAD))
    target = tmp_path / "textual.onnx"
    target.write_bytes(PAYLOAD)

    _provisioner(remote, verify_cached=True).provision(target, URL, PAYLOAD_MD5)

    assert remote.requests == []


def test_transient_errors_are_retried(tmp_path):
    remote = Remote(
        httpx.ConnectError("connection reset"),
        httpx.Response(503),
        httpx.Response(200, content=PAYLOAD),
    )
    target = tmp_path / "textual.onnx"

    _provisioner(remote).provision(target, URL, PAYLOAD_MD5)

    assert len(remote.requests) == 3
    assert target.read_bytes() == PAYLOAD
    assert _leftovers(tmp_path) == []


def test_retries_exhausted_raise_provisioning_error(tmp_path):
    remote = Remote(httpx.ConnectError("unreachable"))
    metrics = MetricsCollector("test")
    target = tmp_path / "textual.onnx"

    with pytest.raises(ProvisioningError, match="unable to download"):
        _provisioner(remote, metrics=metrics).provision(target, URL, PAYLOAD_MD5)

    assert len(remote.requests) == 3
    assert not target.exists()
    assert metrics.registry.get_sample_value("ml_asset_downloads_total", {"status": "error"}) == 1.0


def test_client_errors_are_not_retried(tmp_path):
    remote = Remote(httpx.Response(404))
    target = tmp_path / "textual.onnx"

    with pytest.raises(ProvisioningError):
        _provisioner(remote).provision(target, URL, PAYLOAD_MD5)

    assert len(remote.requests) == 1
    assert not target.exists()
    assert _leftovers(tmp_path) == []
