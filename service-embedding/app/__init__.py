"""Embedder service package.

Layout:
- ``api``: FastAPI route handlers and request/response models.
- ``assets``: static model catalog and the artifact provisioner.
- ``encoders``: the ``Embedder`` contract, CLIP and INSTRUCTOR embedders,
  and the ``EmbedderManager`` registry.
- ``pipelines``: image preprocessing and retry/backoff helpers.
- ``runtime``: service-local metrics and the startup model list.

Import convenience:
- from app.encoders.embedder_manager import EmbedderManager
"""
