"""Embedders and their manager.

Exports nothing eagerly: ``clip_embedder`` pulls in onnxruntime and
``instructor_embedder`` pulls in sentence-transformers, so import the module
you need.
"""
