"""Processing helpers used by the embedders.

- ``image_processor``: fetch, decode and normalize images for visual towers.
- ``retry_handler``: exponential backoff for transient transfer failures.
"""
