"""Visualization helpers for segmentation masks."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import numpy as np
from PIL import Image

Rgba = tuple[int, int, int, int]

DEFAULT_COLORS: tuple[Rgba, ...] = (
    (0, 0, 0, 0),  # background: transparent
    (255, 0, 0, 128),  # segmented area: half-transparent red
)


def colorize_mask(mask: np.ndarray, colors: Sequence[Rgba] = DEFAULT_COLORS) -> Image.Image:
    """Map each mask index to an RGBA color (index i -> colors[i])."""
    palette = np.asarray(colors, dtype=np.uint8)
    if int(mask.max(initial=0)) >= len(palette):
        raise ValueError(f"mask index {int(mask.max())} has no color (got {len(palette)} colors)")
    return Image.fromarray(palette[mask.astype(np.intp)])


def overlay_mask(
    img: Image.Image,
    mask: np.ndarray,
    colors: Sequence[Rgba] = DEFAULT_COLORS,
) -> Image.Image:
    """Composite the colorized mask over `img` and return an RGB image."""
    if img.size != (mask.shape[1], mask.shape[0]):
        raise ValueError(f"mask shape {mask.shape} does not match image size {img.size}")
    base = img.convert("RGBA")
    return Image.alpha_composite(base, colorize_mask(mask, colors)).convert("RGB")


def save_mask(mask: np.ndarray, out_path: Path) -> None:
    """Save a {0,1} mask as a black/white PNG."""
    Image.fromarray((mask > 0).astype(np.uint8) * 255).save(out_path)
