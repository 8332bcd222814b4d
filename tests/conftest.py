"""Shared fixtures for the embedder service tests."""

import pytest

from libs.common.config import EmbedderConfig
from tests.fakes import make_clip_embedder


@pytest.fixture
def clip_embedder():
    """CLIP embedder wired to fake sessions."""
    return make_clip_embedder()


@pytest.fixture
def embedder_config(tmp_path):
    """Config pointing the asset cache at a temporary folder."""
    return EmbedderConfig(
        ml_model_folder=tmp_path / "models",
        ml_model_config=tmp_path / "config.yaml",
        ml_construction_workers=4,
        ml_log_format="console",
    )
