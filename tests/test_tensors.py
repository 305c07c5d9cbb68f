import numpy as np
import pytest

from stepwise_sam.errors import ShapeMismatch, TensorReleased
from stepwise_sam.runtime.tensors import Tensor, release_all


def test_tensor_shape_must_match_buffer_length() -> None:
    with pytest.raises(ShapeMismatch):
        Tensor("x", (2, 3), [1.0, 2.0, 3.0])

    t = Tensor("x", (2, 3), np.arange(6))
    assert t.shape == (2, 3)
    assert t.size == 6
    assert t.numpy().dtype == np.float32
    assert t.numpy()[1, 2] == pytest.approx(5.0)


def test_release_is_idempotent_and_blocks_reads() -> None:
    t = Tensor.zeros("z", (1, 4))
    assert not t.released
    t.release()
    t.release()
    assert t.released
    with pytest.raises(TensorReleased):
        t.numpy()
    assert "released" in repr(t)


def test_release_all_goes_in_reverse_order_and_skips_none() -> None:
    order: list[str] = []

    class _Recorder:
        def __init__(self, name: str) -> None:
            self.name = name

        def release(self) -> None:
            order.append(self.name)

    release_all([_Recorder("a"), None, _Recorder("b"), _Recorder("c")])  # type: ignore[list-item]
    assert order == ["c", "b", "a"]


def test_from_array_keeps_shape() -> None:
    arr = np.ones((1, 3, 4, 5), dtype=np.float64)
    t = Tensor.from_array("img", arr)
    assert t.shape == (1, 3, 4, 5)
    assert t.numpy().dtype == np.float32
