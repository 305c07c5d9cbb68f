"""Image I/O and image -> tensor conversion."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from stepwise_sam.runtime.tensors import Tensor


def ensure_dir(path: Path) -> Path:
    """Create the output directory `path` (and parents) and return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def read_image(path: Path) -> Image.Image:
    """Load `path` fully into memory as RGB and close the file.

    Palette, grayscale and RGBA sources are converted; alpha is dropped.
    """
    with Image.open(path) as src:
        return src.convert("RGB")


def image_to_tensor(img: Image.Image, name: str, *, input_max: float = 255.0) -> Tensor:
    """Convert an RGB image to a (1, 3, H, W) float tensor in [0, input_max].

    Row 0 of the tensor is the top row of the image.
    """
    arr = np.asarray(img.convert("RGB"), dtype=np.float32)
    arr = arr * (float(input_max) / 255.0)
    chw = np.ascontiguousarray(arr.transpose(2, 0, 1))[None, ...]
    return Tensor.from_array(name, chw)
