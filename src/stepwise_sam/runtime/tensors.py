"""Named numpy-backed tensors with explicit, idempotent release."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence

import numpy as np

from stepwise_sam.errors import ShapeMismatch, TensorReleased

LOG = logging.getLogger(__name__)


class Tensor:
    """A named, shaped float buffer owned by whoever created it.

    The owner must call `release()` once the last consumer is done. Reading a
    released tensor raises `TensorReleased`; releasing twice is a no-op.
    """

    __slots__ = ("name", "shape", "_data")

    def __init__(
        self,
        name: str,
        shape: Sequence[int],
        data: np.ndarray | Sequence[float],
        *,
        dtype: np.dtype | type = np.float32,
    ) -> None:
        arr = np.asarray(data, dtype=dtype)
        shape = tuple(int(d) for d in shape)
        if math.prod(shape) != arr.size:
            raise ShapeMismatch(
                f"tensor {name!r}: shape {shape} holds {math.prod(shape)} elements, "
                f"buffer has {arr.size}"
            )
        self.name = name
        self.shape = shape
        self._data: np.ndarray | None = arr.reshape(shape)

    @classmethod
    def from_array(cls, name: str, arr: np.ndarray) -> Tensor:
        """Wrap `arr` as a float32 tensor keeping its shape."""
        return cls(name, arr.shape, arr)

    @classmethod
    def zeros(cls, name: str, shape: Sequence[int]) -> Tensor:
        return cls(name, shape, np.zeros(tuple(shape), dtype=np.float32))

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def size(self) -> int:
        return math.prod(self.shape)

    def numpy(self) -> np.ndarray:
        """Return the backing array (a view, not a copy)."""
        if self._data is None:
            raise TensorReleased(f"tensor {self.name!r} was read after release")
        return self._data

    def release(self) -> None:
        if self._data is None:
            return
        LOG.debug("release tensor %s shape=%s", self.name, self.shape)
        self._data = None

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"Tensor(name={self.name!r}, shape={self.shape}, {state})"


def release_all(tensors: Iterable[Tensor | None]) -> None:
    """Release `tensors` in reverse order, skipping `None` entries."""
    for t in reversed(list(tensors)):
        if t is not None:
            t.release()
