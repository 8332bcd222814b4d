"""API subpackage for the embedder service.

Contains the FastAPI router that exposes endpoints for:
- Model registration (``/initialize``, admin only)
- Encoding text and images (``/encode``)
- Model discovery (``/models``)
"""
