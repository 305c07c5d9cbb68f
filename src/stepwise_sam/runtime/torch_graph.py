"""PyTorch graph backend executed one node at a time.

A `TorchGraph` is an ordered list of nodes, each one a module (or any
callable over tensors) reading named values from an environment and writing
named values back. The executor can run the whole list at once or resume it
step by step from a cursor, which is what the incremental scheduler needs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from stepwise_sam.errors import GraphCompileFailure, OutputNotReady
from stepwise_sam.runtime.tensors import Tensor

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GraphNode:
    """One computation step: `outputs = op(*inputs)`."""

    name: str
    op: Callable[..., Any]
    inputs: tuple[str, ...]
    outputs: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class TorchGraph:
    """A validated, ordered node list with declared graph inputs/outputs."""

    nodes: tuple[GraphNode, ...]
    inputs: tuple[str, ...]
    outputs: tuple[str, ...]


def compile_graph(
    nodes: Sequence[GraphNode],
    *,
    inputs: Sequence[str],
    outputs: Sequence[str],
) -> TorchGraph:
    """Check that `nodes` form a runnable graph in the given order.

    Raises:
        GraphCompileFailure: If a node reads a value nobody produced before it,
            a node name repeats, or a graph output is never produced.
    """
    available = set(inputs)
    seen: set[str] = set()
    for node in nodes:
        if node.name in seen:
            raise GraphCompileFailure(f"duplicate node name {node.name!r}")
        seen.add(node.name)
        if not node.outputs:
            raise GraphCompileFailure(f"node {node.name!r} declares no outputs")
        missing = [n for n in node.inputs if n not in available]
        if missing:
            raise GraphCompileFailure(f"node {node.name!r} reads undefined values {missing}")
        available.update(node.outputs)
    never = [n for n in outputs if n not in available]
    if never:
        raise GraphCompileFailure(f"graph outputs {never} are never produced")
    return TorchGraph(nodes=tuple(nodes), inputs=tuple(inputs), outputs=tuple(outputs))


def _is_sequential(module: Any) -> bool:
    # Scripted modules keep the eager class name in `original_name`.
    if getattr(module, "original_name", None) == "Sequential":
        return True
    import torch  # local import to keep module import lightweight

    return isinstance(module, torch.nn.Sequential)


def graph_from_module(
    module: Any,
    *,
    inputs: Sequence[str],
    outputs: Sequence[str],
    split_children: bool = True,
) -> TorchGraph:
    """Build a graph from a torch module.

    With a single input and output, a sequential module (`nn.Sequential`, or
    a scripted one) is split into one step per child, chained in order.
    Anything else becomes a single step calling the module's own `forward`
    with every input, since its children alone do not describe the graph.
    """
    children = list(module.named_children()) if split_children and _is_sequential(module) else []
    if len(inputs) == 1 and len(outputs) == 1 and children:
        nodes: list[GraphNode] = []
        prev = inputs[0]
        for i, (child_name, child) in enumerate(children):
            out = outputs[0] if i == len(children) - 1 else f"{child_name}:{i}"
            nodes.append(GraphNode(name=f"{child_name}", op=child, inputs=(prev,), outputs=(out,)))
            prev = out
        return compile_graph(nodes, inputs=inputs, outputs=outputs)
    node = GraphNode(name="module", op=module, inputs=tuple(inputs), outputs=tuple(outputs))
    return compile_graph([node], inputs=inputs, outputs=outputs)


def load_torchscript_graph(
    path: Path,
    *,
    inputs: Sequence[str],
    outputs: Sequence[str],
    split_children: bool = True,
    torch_module: Any | None = None,
) -> TorchGraph:
    """Load a TorchScript file and turn it into a `TorchGraph`."""
    if torch_module is None:
        import torch as torch_module  # local import to keep module import lightweight

    try:
        module = torch_module.jit.load(str(path), map_location="cpu")
    except (RuntimeError, ValueError, OSError) as e:
        raise GraphCompileFailure(f"cannot load TorchScript graph from {path}") from e
    LOG.info("Loaded TorchScript graph %s", path)
    return graph_from_module(module, inputs=inputs, outputs=outputs, split_children=split_children)


@dataclass
class _Cursor:
    env: dict[str, Any] = field(default_factory=dict)
    index: int = 0
    done: bool = False


class TorchGraphExecutor:
    """Runs a `TorchGraph` fully or step by step on a torch device."""

    def __init__(
        self,
        graph: TorchGraph,
        device: str = "auto",
        *,
        torch_module: Any | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            graph: Compiled graph to run.
            device: "auto", "cpu", or "cuda".
            torch_module: Optional torch-like module for dependency injection.
        """
        if torch_module is None:
            import torch as torch_module  # local import to keep module import lightweight

        if device == "auto":
            device = "cuda" if torch_module.cuda.is_available() else "cpu"

        self.torch = torch_module
        self.device = device
        self.graph = graph
        for node in graph.nodes:
            if hasattr(node.op, "to"):
                node.op.to(device)
            if hasattr(node.op, "eval"):
                node.op.eval()
        self._outputs: dict[str, Any] | None = None
        self._outputs_cursor: _Cursor | None = None

    @property
    def step_count(self) -> int:
        return len(self.graph.nodes)

    @property
    def output_names(self) -> tuple[str, ...]:
        return self.graph.outputs

    def execute_all(self, inputs: Mapping[str, Tensor]) -> dict[str, Tensor]:
        cursor = self.begin_stepwise(inputs)
        self.advance_cursor(cursor, self.step_count)
        return {name: self.read_output(name) for name in self.graph.outputs}

    def begin_stepwise(self, inputs: Mapping[str, Tensor]) -> _Cursor:
        missing = [n for n in self.graph.inputs if n not in inputs]
        if missing:
            raise KeyError(f"missing graph inputs {missing}")
        env = {
            name: self.torch.from_numpy(np.array(inputs[name].numpy(), copy=True)).to(self.device)
            for name in self.graph.inputs
        }
        cursor = _Cursor(env=env)
        if not self.graph.nodes:
            self._finish(cursor)
        return cursor

    def advance_cursor(self, cursor: _Cursor, n: int) -> bool:
        if cursor.done:
            return True
        stop = min(cursor.index + max(0, int(n)), len(self.graph.nodes))
        with self.torch.inference_mode():
            while cursor.index < stop:
                self._run_node(self.graph.nodes[cursor.index], cursor.env)
                cursor.index += 1
        if cursor.index >= len(self.graph.nodes):
            self._finish(cursor)
        return cursor.done

    def read_output(self, name: str) -> Tensor:
        if self._outputs is None:
            raise OutputNotReady("graph has not completed a run")
        value = self._outputs[name]
        arr = value.detach().to("cpu").numpy() if hasattr(value, "detach") else np.asarray(value)
        return Tensor(name, arr.shape, np.array(arr, copy=True), dtype=arr.dtype)

    def release_cursor(self, cursor: _Cursor) -> None:
        cursor.env.clear()
        if cursor is self._outputs_cursor:
            self._outputs = None
            self._outputs_cursor = None

    def _finish(self, cursor: _Cursor) -> None:
        cursor.done = True
        self._outputs = {name: cursor.env[name] for name in self.graph.outputs}
        self._outputs_cursor = cursor
        # Intermediate activations are dead once the outputs are captured.
        cursor.env.clear()

    @staticmethod
    def _run_node(node: GraphNode, env: dict[str, Any]) -> None:
        result = node.op(*(env[name] for name in node.inputs))
        if len(node.outputs) == 1:
            env[node.outputs[0]] = result
            return
        if isinstance(result, Mapping):
            for name in node.outputs:
                env[name] = result[name]
            return
        for name, value in zip(node.outputs, result, strict=True):
            env[name] = value
