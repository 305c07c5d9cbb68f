from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from stepwise_sam.config import PipelineSettings
from stepwise_sam.errors import GraphCompileFailure, OutputNotReady
from stepwise_sam.models.model import Model
from stepwise_sam.models.scheduler import Outcome, SchedulerState
from stepwise_sam.pipelines.segmentation import (
    DECODER_EMBEDDING_INPUT,
    DECODER_PROMPT_INPUTS,
    InferencePipeline,
    make_decoder,
    make_encoder,
)
from stepwise_sam.runtime.tensors import Tensor
from stepwise_sam.runtime.torch_graph import (
    GraphNode,
    TorchGraphExecutor,
    compile_graph,
    graph_from_module,
    load_torchscript_graph,
)
from stepwise_sam.vision.types import Point

torch = pytest.importorskip("torch")


def _mlp() -> torch.nn.Module:
    torch.manual_seed(0)
    return torch.nn.Sequential(torch.nn.Linear(4, 8), torch.nn.ReLU(), torch.nn.Linear(8, 2)).eval()


def _x() -> Tensor:
    rng = np.random.default_rng(3)
    return Tensor.from_array("x", rng.standard_normal((2, 4)).astype(np.float32))


def test_sequential_is_split_into_one_step_per_child() -> None:
    module = _mlp()
    graph = graph_from_module(module, inputs=("x",), outputs=("y",))
    assert [n.name for n in graph.nodes] == ["0", "1", "2"]
    assert graph.nodes[0].inputs == ("x",)
    assert graph.nodes[-1].outputs == ("y",)

    ex = TorchGraphExecutor(graph, "cpu")
    assert ex.step_count == 3
    full = ex.execute_all({"x": _x()})["y"].numpy()

    cursor = ex.begin_stepwise({"x": _x()})
    assert ex.advance_cursor(cursor, 1) is False
    assert ex.advance_cursor(cursor, 1) is False
    assert ex.advance_cursor(cursor, 1) is True
    stepped = ex.read_output("y").numpy()

    with torch.no_grad():
        expected = module(torch.from_numpy(_x().numpy())).numpy()
    assert stepped.shape == (2, 2)
    assert np.array_equal(full, stepped)
    assert np.allclose(stepped, expected, atol=1e-6)


def test_split_children_false_keeps_one_step() -> None:
    graph = graph_from_module(_mlp(), inputs=("x",), outputs=("y",), split_children=False)
    assert len(graph.nodes) == 1


def test_read_output_before_any_run() -> None:
    ex = TorchGraphExecutor(graph_from_module(_mlp(), inputs=("x",), outputs=("y",)), "cpu")
    with pytest.raises(OutputNotReady):
        ex.read_output("y")


def test_missing_input_is_rejected() -> None:
    ex = TorchGraphExecutor(graph_from_module(_mlp(), inputs=("x",), outputs=("y",)), "cpu")
    with pytest.raises(KeyError):
        ex.begin_stepwise({})


def test_multi_output_nodes() -> None:
    nodes = [
        GraphNode(name="split", op=lambda a: (a + 1, a * 2), inputs=("a",), outputs=("p", "q")),
        GraphNode(name="named", op=lambda p, q: {"s": p + q, "d": p - q}, inputs=("p", "q"), outputs=("s", "d")),
    ]
    ex = TorchGraphExecutor(compile_graph(nodes, inputs=("a",), outputs=("s", "d")), "cpu")
    out = ex.execute_all({"a": Tensor("a", (3,), [0.0, 1.0, 2.0])})
    assert out["s"].numpy().tolist() == [1.0, 4.0, 7.0]
    assert out["d"].numpy().tolist() == [1.0, 0.0, -1.0]


def test_released_cursor_drops_captured_outputs() -> None:
    ex = TorchGraphExecutor(graph_from_module(_mlp(), inputs=("x",), outputs=("y",)), "cpu")
    cursor = ex.begin_stepwise({"x": _x()})
    ex.advance_cursor(cursor, 10)
    out = ex.read_output("y")
    ex.release_cursor(cursor)
    with pytest.raises(OutputNotReady):
        ex.read_output("y")
    # Copies handed out earlier stay valid.
    assert out.numpy().shape == (2, 2)


@pytest.mark.parametrize(
    ("nodes", "inputs", "outputs", "match"),
    [
        ([GraphNode("a", abs, ("x",), ("h",)), GraphNode("a", abs, ("h",), ("y",))], ("x",), ("y",), "duplicate"),
        ([GraphNode("a", abs, ("nope",), ("y",))], ("x",), ("y",), "undefined"),
        ([GraphNode("a", abs, ("x",), ("h",))], ("x",), ("y",), "never produced"),
        ([GraphNode("a", abs, ("x",), ())], ("x",), ("x",), "no outputs"),
    ],
)
def test_compile_graph_rejects_broken_graphs(nodes, inputs, outputs, match) -> None:
    with pytest.raises(GraphCompileFailure, match=match):
        compile_graph(nodes, inputs=inputs, outputs=outputs)


def test_torchscript_roundtrip(tmp_path: Path) -> None:
    module = _mlp()
    path = tmp_path / "mlp.pt"
    torch.jit.save(torch.jit.script(module), str(path))

    graph = load_torchscript_graph(path, inputs=("x",), outputs=("y",))
    assert len(graph.nodes) == 3
    ex = TorchGraphExecutor(graph, "cpu")
    got = ex.execute_all({"x": _x()})["y"].numpy()
    with torch.no_grad():
        expected = module(torch.from_numpy(_x().numpy())).numpy()
    assert np.allclose(got, expected, atol=1e-6)


def test_missing_torchscript_file(tmp_path: Path) -> None:
    with pytest.raises(GraphCompileFailure):
        load_torchscript_graph(tmp_path / "missing.pt", inputs=("x",), outputs=("y",))
    with pytest.raises(GraphCompileFailure):
        InferencePipeline.from_files(tmp_path / "enc.pt", tmp_path / "dec.pt", PipelineSettings(device="cpu"))


def test_model_over_torch_executor() -> None:
    ex = TorchGraphExecutor(graph_from_module(_mlp(), inputs=("x",), outputs=("y",)), "cpu")
    model = Model(ex, name="mlp", step_divisor=5)
    assert (model.total_steps, model.step_budget) == (3, 1)

    blocking = model.predict_blocking({"x": _x()})["y"].numpy().copy()

    schedule = model.begin_incremental({"x": _x()})
    outcomes = []
    while True:
        outcome = model.advance(schedule)
        outcomes.append(outcome)
        if outcome is Outcome.COMPLETE:
            break
    assert outcomes == [Outcome.CONTINUING, Outcome.CONTINUING, Outcome.COMPLETE]
    assert model.state is SchedulerState.COMPLETE
    assert np.array_equal(model.peek_output("y").numpy(), blocking)


class _Branchy(torch.nn.Module):
    """Children used out of order and combined, so they are not a chain."""

    def __init__(self) -> None:
        super().__init__()
        self.a = torch.nn.Linear(4, 4)
        self.b = torch.nn.Linear(4, 4)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.b(x) * 2 + self.a(x)


def test_non_sequential_module_runs_its_own_forward() -> None:
    torch.manual_seed(1)
    module = _Branchy().eval()
    graph = graph_from_module(module, inputs=("x",), outputs=("y",))
    assert len(graph.nodes) == 1

    got = TorchGraphExecutor(graph, "cpu").execute_all({"x": _x()})["y"].numpy()
    with torch.no_grad():
        expected = module(torch.from_numpy(_x().numpy())).numpy()
    assert np.allclose(got, expected, atol=1e-6)


def test_scripted_non_sequential_module_is_not_split(tmp_path: Path) -> None:
    torch.manual_seed(1)
    module = _Branchy().eval()
    path = tmp_path / "branchy.pt"
    torch.jit.save(torch.jit.script(module), str(path))

    graph = load_torchscript_graph(path, inputs=("x",), outputs=("y",))
    assert len(graph.nodes) == 1
    got = TorchGraphExecutor(graph, "cpu").execute_all({"x": _x()})["y"].numpy()
    with torch.no_grad():
        expected = module(torch.from_numpy(_x().numpy())).numpy()
    assert np.allclose(got, expected, atol=1e-6)


def test_blocking_run_leaves_nothing_in_executor_after_release() -> None:
    ex = TorchGraphExecutor(graph_from_module(_mlp(), inputs=("x",), outputs=("y",)), "cpu")
    model = Model(ex, name="mlp")
    out = model.predict_blocking({"x": _x()})["y"]
    model.release_outputs()
    assert out.released
    with pytest.raises(OutputNotReady):
        ex.read_output("y")

    model.predict_blocking({"x": _x()})
    model.close()
    with pytest.raises(OutputNotReady):
        ex.read_output("y")


class _PadEncoder(torch.nn.Module):
    """Passes the padded image through as its own embedding."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.clone()


class _DotDecoder(torch.nn.Module):
    """Scores a disc around the first prompt point, in the input's row order."""

    def __init__(self, side: int) -> None:
        super().__init__()
        self.side = side

    def forward(self, emb, coords, labels, mask_input, has_mask, orig_size):
        h, w = int(orig_size[0]), int(orig_size[1])
        scale = self.side / max(h, w)
        px, py = coords[0, 0, 0] / scale, coords[0, 0, 1] / scale
        ys = torch.arange(h, dtype=torch.float32).view(h, 1)
        xs = torch.arange(w, dtype=torch.float32).view(1, w)
        inside = (xs - px) ** 2 + (ys - py) ** 2 <= 9.0
        scores = torch.where(inside, torch.tensor(1.0), torch.tensor(-1.0))
        return scores.view(1, 1, h, w)


def test_torch_pipeline_mask_lands_where_prompted() -> None:
    settings = PipelineSettings(model_long_side=64, device="cpu")
    enc_graph = graph_from_module(
        _PadEncoder(), inputs=(settings.encoder_input,), outputs=(settings.encoder_output,)
    )
    dec_graph = graph_from_module(
        _DotDecoder(64),
        inputs=(DECODER_EMBEDDING_INPUT, *DECODER_PROMPT_INPUTS),
        outputs=(settings.decoder_output,),
    )
    pipeline = InferencePipeline(
        make_encoder(TorchGraphExecutor(enc_graph, "cpu"), settings),
        make_decoder(TorchGraphExecutor(dec_graph, "cpu"), settings),
        settings=settings,
    )
    img = Image.new("RGB", (100, 60), color=(40, 80, 120))

    mask = pipeline.segment_blocking(img, Point(x=50, y=10))
    assert mask.shape == (60, 100)
    assert mask[10, 50] == 1
    # Nothing at the vertically mirrored position.
    assert mask[49, 50] == 0
    assert mask[40:, :].sum() == 0

    incremental = pipeline.segment_incremental(img, Point(x=50, y=10)).run_to_completion()
    assert np.array_equal(mask, incremental)
