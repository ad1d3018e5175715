"""
Image embeddings using a sentence-transformers CLIP model.
"""

import asyncio
import io
import os
from typing import List, Optional

from PIL import Image, ImageOps, UnidentifiedImageError
from sentence_transformers import SentenceTransformer

from fashion_core.errors import InvalidInput, ProviderFailure
from src.logger import exception, get_logger
from src.models import EMBEDDING_DIMENSION

logger = get_logger(__name__)

# clip-ViT-B-32 embeds images into the same 512-dimension space the table is sized for
MODEL_NAME = os.getenv("EMBEDDING_MODEL", "clip-ViT-B-32")
EMBEDDING_TIMEOUT_SECONDS = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30"))

# Normalized images are square RGB JPEGs of this side length
NORMALIZED_SIZE = 512

_model: Optional[SentenceTransformer] = None
_model_lock = asyncio.Lock()


def _get_embedding_model() -> SentenceTransformer:
    """Loads and returns the CLIP model, caching it globally."""
    global _model
    if _model is None:
        logger.info(f"Loading embedding model: {MODEL_NAME}")
        _model = SentenceTransformer(MODEL_NAME)
        logger.info(f"Embedding model loaded successfully: {MODEL_NAME}")
    return _model


def normalize_image(image_bytes: bytes) -> bytes:
    """
    Decode an image and re-encode it as a 512x512 RGB JPEG.

    EXIF orientation is applied and the image is center-cropped to a square so
    the same photo always produces the same normalized bytes.

    Raises:
        InvalidInput: If the bytes are not a decodable image.
    """
    if not image_bytes:
        raise InvalidInput("Image bytes must not be empty")
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image = ImageOps.exif_transpose(image).convert("RGB")
            image = ImageOps.fit(image, (NORMALIZED_SIZE, NORMALIZED_SIZE), method=Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=90)
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidInput(f"Image could not be decoded: {e}") from e
    return buffer.getvalue()


def _sync_embed_image(image_bytes: bytes) -> List[float]:
    """
    Synchronous implementation of image embedding - for use with asyncio.to_thread().

    Args:
        image_bytes: Normalized image bytes.

    Returns:
        The embedding as a list of floats.
    """
    model = _get_embedding_model()
    with Image.open(io.BytesIO(image_bytes)) as image:
        embedding = model.encode(image.convert("RGB"), convert_to_numpy=True)
    return embedding.tolist()


async def embed_image(image_bytes: bytes) -> List[float]:
    """
    Asynchronously compute the embedding of an image.

    Runs the CPU-bound model call in a worker thread so other requests keep
    being served. The model is loaded once, on first use.

    Raises:
        ProviderFailure: If the model cannot be loaded or the image cannot be embedded.
    """
    async with _model_lock:
        if _model is None:
            try:
                await asyncio.to_thread(_get_embedding_model)
            except Exception as e:
                exception("Failed to load embedding model", exc=e, model=MODEL_NAME)
                raise ProviderFailure(f"Embedding model {MODEL_NAME} could not be loaded: {e}") from e

    try:
        return await asyncio.to_thread(_sync_embed_image, image_bytes)
    except Exception as e:
        exception("Error generating image embedding", exc=e, model=MODEL_NAME)
        raise ProviderFailure(f"Image embedding failed: {e}") from e


__all__ = [
    "EMBEDDING_DIMENSION",
    "EMBEDDING_TIMEOUT_SECONDS",
    "MODEL_NAME",
    "embed_image",
    "normalize_image",
]
