"""Image preprocessing pipeline.

Decodes uploaded frames, validates their size, and converts RGB arrays into
the normalised tensors the classifier expects.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray


def decode_image(
    image_bytes: bytes,
    *,
    max_file_size: int | None = None,
    max_pixels: int | None = None,
) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_file_size: Reject payloads larger than this many bytes.
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array, EXIF orientation applied.

    Raises:
        ValueError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ValueError("Empty image payload")
    if max_file_size is not None and len(image_bytes) > max_file_size:
        raise ValueError(f"Image payload of {len(image_bytes)} bytes exceeds limit of {max_file_size}")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise ValueError(f"Image of {width}x{height} pixels exceeds limit of {max_pixels}")
            oriented = ImageOps.exif_transpose(img) or img
            rgb = oriented.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValueError(f"Could not decode image: {exc}") from exc

    return np.asarray(rgb, dtype=np.uint8)


def crop_to_square(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Centre-crop an HxWxC array to its shorter side."""
    height, width = image.shape[:2]
    side = min(height, width)
    top = (height - side) // 2
    left = (width - side) // 2
    return image[top : top + side, left : left + side]


def resize(image: NDArray[np.uint8], size: int) -> NDArray[np.uint8]:
    if image.shape[0] == size and image.shape[1] == size:
        return image
    resized = Image.fromarray(image).resize((size, size), Image.Resampling.BILINEAR)
    return np.asarray(resized, dtype=np.uint8)


def flip_horizontal(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    return np.ascontiguousarray(image[:, ::-1])


def to_model_input(image: NDArray[np.uint8], size: int, *, channels_first: bool = False) -> NDArray[np.float32]:
    """Prepare an RGB frame for the classifier.

    Centre-crops, resizes to ``size`` x ``size`` and scales pixels to [-1, 1].

    Returns:
        Float32 batch of one, NHWC (or NCHW when ``channels_first``).
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Expected an HxWx3 RGB image, got shape {image.shape}")

    square = resize(crop_to_square(image), size)
    tensor = square.astype(np.float32) / 127.5 - 1.0
    if channels_first:
        tensor = np.transpose(tensor, (2, 0, 1))
    return np.expand_dims(tensor, 0)
