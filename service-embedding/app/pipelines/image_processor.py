"""Image fetching and CLIP-style preprocessing.

Turns an image reference into the normalized channel-first float32 tensor the
visual towers expect: bicubic resize of the shorter side, center crop to a
square, RGB conversion, scaling to [0, 1] and per-channel normalization with
the CLIP statistics.

A single ``ImageProcessor`` is shared by every embedder a manager builds; it
holds no per-request state, only a thread-safe ``httpx.Client``.
"""

import io
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError
import structlog

logger = structlog.get_logger("embedder_service.image_processor")

CLIP_MEAN: Tuple[float, float, float] = (0.48145466, 0.4578275, 0.40821073)
CLIP_STD: Tuple[float, float, float] = (0.26862954, 0.26130258, 0.27577711)


class ImageProcessingError(Exception):
    """Fetching, decoding or resizing an image failed."""
    pass


class ImageProcessor:
    """Converts image references into ``(3, size, size)`` float32 arrays.

    Supported references: ``http(s)://`` URLs, ``file://`` URIs and plain
    filesystem paths.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        mean: Tuple[float, float, float] = CLIP_MEAN,
        std: Tuple[float, float, float] = CLIP_STD,
    ):
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self.mean = np.asarray(mean, dtype=np.float32).reshape(3, 1, 1)
        self.std = np.asarray(std, dtype=np.float32).reshape(3, 1, 1)

    def fetch(self, reference: str) -> bytes:
        """Read the raw bytes behind a reference."""
        parsed = urlparse(reference)
        try:
            if parsed.scheme in ("http", "https"):
                response = self.client.get(reference)
                response.raise_for_status()
                return response.content
            if parsed.scheme == "file":
                return Path(unquote(parsed.path)).read_bytes()
            if parsed.scheme == "":
                return Path(reference).read_bytes()
        except (httpx.HTTPError, OSError) as e:
            raise ImageProcessingError(f"unable to fetch image: {e}") from e
        raise ImageProcessingError(f"unsupported uri scheme: {parsed.scheme}")

    def to_tensor(self, reference: str, size: int) -> np.ndarray:
        """Fetch and preprocess one image reference."""
        return self.bytes_to_tensor(self.fetch(reference), size)

    def bytes_to_tensor(self, data: bytes, size: int) -> np.ndarray:
        """Decode and preprocess encoded image bytes."""
        try:
            with Image.open(io.BytesIO(data)) as img:
                img = img.convert("RGB")
                img = self._resize_shorter_side(img, size)
                img = self._center_crop(img, size)
                pixels = np.asarray(img, dtype=np.float32) / 255.0
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise ImageProcessingError(f"unable to decode image: {e}") from e

        # HWC -> CHW
        tensor = pixels.transpose(2, 0, 1)
        return ((tensor - self.mean) / self.std).astype(np.float32)

    @staticmethod
    def _resize_shorter_side(img: Image.Image, size: int) -> Image.Image:
        width, height = img.size
        scale = size / min(width, height)
        new_size = (max(size, round(width * scale)), max(size, round(height * scale)))
        return img.resize(new_size, Image.Resampling.BICUBIC)

    @staticmethod
    def _center_crop(img: Image.Image, size: int) -> Image.Image:
        width, height = img.size
        left = (width - size) // 2
        top = (height - size) // 2
        return img.crop((left, top, left + size, top + size))

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
