"""
Image preprocessing for the local classifier.
"""
from io import BytesIO
from typing import Tuple

import numpy as np
import torch
from PIL import Image, UnidentifiedImageError

from .errors import ImageDecodeError

DEFAULT_SIZE = (224, 224)


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode any Pillow-readable raster image into RGB (alpha dropped)."""
    if not image_bytes:
        raise ImageDecodeError("empty image payload")
    try:
        img = Image.open(BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise ImageDecodeError(f"could not decode image: {e}")
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img


def preprocess(image_bytes: bytes, size: Tuple[int, int] = DEFAULT_SIZE) -> torch.Tensor:
    """Return a [1, H, W, 3] float tensor scaled to 0..1.

    `size` is (height, width). The resize fills the target exactly and does
    not preserve aspect ratio.
    """
    height, width = size
    img = decode_image(image_bytes).resize((width, height), Image.BILINEAR)
    arr = np.asarray(img, dtype=np.uint8)
    tensor = torch.from_numpy(arr.astype(np.float32) / 255.0)
    return tensor.unsqueeze(0)
