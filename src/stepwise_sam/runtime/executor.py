"""Graph executor contract used by `stepwise_sam.models.model.Model`."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from stepwise_sam.runtime.tensors import Tensor


class SupportsGraphExecution(Protocol):
    """Protocol for a backend that runs a compiled graph as an ordered step list."""

    @property
    def step_count(self) -> int:
        """Number of internal computation steps in the graph."""
        ...

    @property
    def output_names(self) -> tuple[str, ...]:
        """Names of the graph outputs, in declaration order."""
        ...

    def execute_all(self, inputs: Mapping[str, Tensor]) -> dict[str, Tensor]:
        """Run every step and return the graph outputs."""
        ...

    def begin_stepwise(self, inputs: Mapping[str, Tensor]) -> Any:
        """Install `inputs` and return a cursor positioned before the first step."""
        ...

    def advance_cursor(self, cursor: Any, n: int) -> bool:
        """Run up to `n` steps from `cursor`; return True once the last step has run."""
        ...

    def read_output(self, name: str) -> Tensor:
        """Return output `name` of the last completed run."""
        ...

    def release_cursor(self, cursor: Any) -> None:
        """Drop any intermediate state held by `cursor`."""
        ...
