"""Mapping between image pixel space and the encoder's square input space.

The encoder sees the image downscaled so that its long side equals the model
input side, pasted flush against the top-left corner of a black square. The
mask rasterizer relies on the same top-left anchor, so prompts and masks
round-trip without an offset.
"""

from __future__ import annotations

from PIL import Image

from stepwise_sam.vision.types import Annotation, BoundingBox, Point, PointSet, ResizeRatio


def resized_size(width: int, height: int, target_long_side: int) -> tuple[int, int]:
    """Size of a `width` x `height` image scaled so its long side is `target_long_side`."""
    scale = target_long_side * (1.0 / max(width, height))
    new_w = max(1, int(width * scale + 0.5))
    new_h = max(1, int(height * scale + 0.5))
    return new_w, new_h


def resize_for_model(img: Image.Image, target_long_side: int) -> tuple[Image.Image, ResizeRatio]:
    """Resize `img` so that max(w, h) == target_long_side (bilinear).

    Returns:
        (resized_img, ratio) where ratio = (resized_w / w, resized_h / h).
    """
    w, h = img.size
    if target_long_side <= 0:
        raise ValueError(f"target_long_side must be positive, got {target_long_side}")
    new_w, new_h = resized_size(w, h, target_long_side)
    resized = img.resize((new_w, new_h), Image.Resampling.BILINEAR)
    ratio = ResizeRatio(width=new_w / float(w), height=new_h / float(h))
    return resized, ratio


def square_pad(img: Image.Image) -> Image.Image:
    """Paste `img` at the top-left of a zero-filled square of side max(w, h)."""
    w, h = img.size
    size = max(w, h)
    if w == h:
        return img.copy()
    square = Image.new(img.mode, (size, size))
    square.paste(img, (0, 0))
    return square


def _scale(annotation: Annotation, sx: float, sy: float) -> Annotation:
    if isinstance(annotation, (Point, BoundingBox, PointSet)):
        return annotation.scaled(sx, sy)
    raise TypeError(f"unsupported annotation type {type(annotation).__name__}")


def map_annotation_to_model_space(annotation: Annotation, ratio: ResizeRatio) -> Annotation:
    """Scale every coordinate of `annotation` by `ratio`."""
    return _scale(annotation, ratio.width, ratio.height)


def map_annotation_to_image_space(annotation: Annotation, ratio: ResizeRatio) -> Annotation:
    """Inverse of `map_annotation_to_model_space`."""
    inv = ratio.inverse()
    return _scale(annotation, inv.width, inv.height)
