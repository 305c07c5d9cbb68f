"""Decoder score tensor -> binary mask."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from stepwise_sam.errors import ShapeMismatch
from stepwise_sam.runtime.tensors import Tensor

LOG = logging.getLogger(__name__)


def _band_bounds(height: int, bands: int) -> list[tuple[int, int]]:
    step = -(-height // bands)
    return [(y0, min(height, y0 + step)) for y0 in range(0, height, step)]


class MaskRasterizer:
    """Thresholds per-pixel decoder scores at zero into a {0,1} uint8 mask.

    Scores are read in the row order of the encoder input (row 0 = top), the
    layout a decoder fed by `image_to_tensor` produces. For decoders that
    emit bottom-up rows, `flip_vertical` reads mask row `y` from score row
    `height - 1 - y`. Every output row depends on exactly one input row, which
    makes row bands safe to fill concurrently.
    """

    def __init__(self, *, flip_vertical: bool = False, workers: int = 1) -> None:
        self.flip_vertical = flip_vertical
        self.workers = max(1, int(workers))

    def rasterize(self, scores: Tensor | np.ndarray, width: int, height: int) -> np.ndarray:
        """Return a (height, width) uint8 mask from a row-major score buffer.

        Raises:
            ShapeMismatch: If the buffer does not hold width * height scores.
        """
        arr = scores.numpy() if isinstance(scores, Tensor) else np.asarray(scores)
        if arr.size != width * height:
            raise ShapeMismatch(
                f"score tensor has {arr.size} values, expected {width}x{height}={width * height}"
            )
        grid = arr.reshape(height, width)
        mask = np.empty((height, width), dtype=np.uint8)

        def fill(y0: int, y1: int) -> None:
            if self.flip_vertical:
                src = grid[height - y1 : height - y0][::-1]
            else:
                src = grid[y0:y1]
            mask[y0:y1] = src > 0.0

        if self.workers == 1 or height < 2 * self.workers:
            fill(0, height)
            return mask

        bands = _band_bounds(height, self.workers)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            for fut in [pool.submit(fill, y0, y1) for y0, y1 in bands]:
                fut.result()
        LOG.debug("rasterized %sx%s mask in %s bands", width, height, len(bands))
        return mask
