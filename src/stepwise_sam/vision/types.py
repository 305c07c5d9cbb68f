"""Core annotation and geometry types shared across the pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias

from stepwise_sam.errors import PromptShapeMismatch

# Decoder prompt labels.
LABEL_BACKGROUND = 0
LABEL_FOREGROUND = 1
LABEL_BOX_TOP_LEFT = 2
LABEL_BOX_BOTTOM_RIGHT = 3


@dataclass(frozen=True)
class Point:
    """A single click prompt in image pixel coordinates.

    Attributes:
        x, y: Pixel coordinates, origin at the top-left corner.
        inside: True for a point on the object, False for a background point.
    """

    x: float
    y: float
    inside: bool = True

    def scaled(self, sx: float, sy: float) -> Point:
        return Point(x=self.x * sx, y=self.y * sy, inside=self.inside)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box prompt in image pixel coordinates.

    Attributes:
        x1, y1: First corner (usually top-left).
        x2, y2: Opposite corner (usually bottom-right).
    """

    x1: float
    y1: float
    x2: float
    y2: float

    def normalized(self) -> BoundingBox:
        """Return the box with (x1, y1) <= (x2, y2)."""
        return BoundingBox(
            x1=min(self.x1, self.x2),
            y1=min(self.y1, self.y2),
            x2=max(self.x1, self.x2),
            y2=max(self.y1, self.y2),
        )

    def scaled(self, sx: float, sy: float) -> BoundingBox:
        return BoundingBox(x1=self.x1 * sx, y1=self.y1 * sy, x2=self.x2 * sx, y2=self.y2 * sy)


@dataclass(frozen=True)
class PointSet:
    """Explicit list of prompt points with one decoder label per point."""

    points: tuple[tuple[float, float], ...]
    labels: tuple[int, ...]

    def validate(self) -> None:
        """Raise `PromptShapeMismatch` unless there is one label per point."""
        if len(self.points) != len(self.labels):
            raise PromptShapeMismatch(
                f"{len(self.points)} prompt points but {len(self.labels)} labels"
            )

    def scaled(self, sx: float, sy: float) -> PointSet:
        return PointSet(
            points=tuple((x * sx, y * sy) for x, y in self.points),
            labels=tuple(self.labels),
        )


Annotation: TypeAlias = Point | BoundingBox | PointSet


@dataclass(frozen=True)
class ResizeRatio:
    """Per-axis scale from source image pixels to model input pixels."""

    width: float
    height: float

    def inverse(self) -> ResizeRatio:
        return ResizeRatio(width=1.0 / self.width, height=1.0 / self.height)


def validate_annotation(annotation: Annotation) -> None:
    """Check annotation invariants before any model runs."""
    if isinstance(annotation, PointSet):
        annotation.validate()
    elif not isinstance(annotation, (Point, BoundingBox)):
        raise TypeError(f"unsupported annotation type {type(annotation).__name__}")
