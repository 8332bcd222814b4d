"""Tests for the embedder service: catalog, provisioning, encoders, manager and API."""
