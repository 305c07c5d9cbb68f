"""Annotation -> decoder prompt tensors."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from stepwise_sam.runtime.tensors import Tensor, release_all
from stepwise_sam.vision.types import (
    LABEL_BACKGROUND,
    LABEL_BOX_BOTTOM_RIGHT,
    LABEL_BOX_TOP_LEFT,
    LABEL_FOREGROUND,
    Annotation,
    BoundingBox,
    Point,
    PointSet,
)


@dataclass(frozen=True)
class PromptTensors:
    """Every decoder input except the image embedding."""

    point_coords: Tensor
    point_labels: Tensor
    mask_input: Tensor
    has_mask_input: Tensor
    orig_im_size: Tensor

    def as_inputs(self) -> dict[str, Tensor]:
        return {
            "point_coords": self.point_coords,
            "point_labels": self.point_labels,
            "mask_input": self.mask_input,
            "has_mask_input": self.has_mask_input,
            "orig_im_size": self.orig_im_size,
        }

    def release(self) -> None:
        release_all(
            [
                self.point_coords,
                self.point_labels,
                self.mask_input,
                self.has_mask_input,
                self.orig_im_size,
            ]
        )


def annotation_to_points(annotation: Annotation) -> tuple[list[tuple[float, float]], list[int]]:
    """Expand an annotation into (points, labels) in its own coordinate frame."""
    if isinstance(annotation, Point):
        label = LABEL_FOREGROUND if annotation.inside else LABEL_BACKGROUND
        return [(float(annotation.x), float(annotation.y))], [label]
    if isinstance(annotation, BoundingBox):
        b = annotation.normalized()
        return (
            [(float(b.x1), float(b.y1)), (float(b.x2), float(b.y2))],
            [LABEL_BOX_TOP_LEFT, LABEL_BOX_BOTTOM_RIGHT],
        )
    if isinstance(annotation, PointSet):
        annotation.validate()
        points = [(float(x), float(y)) for x, y in annotation.points]
        return points, [int(v) for v in annotation.labels]
    raise TypeError(f"unsupported annotation type {type(annotation).__name__}")


class PromptEncoder:
    """Builds the decoder's prompt tensors for single-shot prompts.

    No previous mask is ever fed back: `mask_input` is all zeros and
    `has_mask_input` is 0.
    """

    def __init__(self, mask_input_size: int = 256) -> None:
        self.mask_input_size = int(mask_input_size)

    def encode(self, annotation: Annotation, *, image_size: Sequence[int]) -> PromptTensors:
        """Encode `annotation` (already in model space) for the decoder.

        Args:
            annotation: Prompt in model-input pixel coordinates.
            image_size: Pre-resize (width, height) of the source image.

        Raises:
            PromptShapeMismatch: If a point set has unequal points/labels.
        """
        points, labels = annotation_to_points(annotation)
        n = len(points)
        width, height = int(image_size[0]), int(image_size[1])
        s = self.mask_input_size
        coords = np.array(points, dtype=np.float32).reshape(-1)
        return PromptTensors(
            point_coords=Tensor("point_coords", (1, n, 2), coords),
            point_labels=Tensor("point_labels", (1, n), labels),
            mask_input=Tensor.zeros("mask_input", (1, 1, s, s)),
            has_mask_input=Tensor("has_mask_input", (1,), [0.0]),
            orig_im_size=Tensor("orig_im_size", (2,), [height, width]),
        )
