"""Single model abstraction used for both the image encoder and the mask decoder."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

import numpy as np

from stepwise_sam.errors import OutputNotReady
from stepwise_sam.models.scheduler import (
    DEFAULT_STEP_DIVISOR,
    ExecutionSchedule,
    Outcome,
    SchedulerState,
    StepScheduler,
)
from stepwise_sam.runtime.executor import SupportsGraphExecution
from stepwise_sam.runtime.tensors import Tensor, release_all

LOG = logging.getLogger(__name__)

Preprocess = Callable[[Any], Mapping[str, Tensor]]
Postprocess = Callable[[dict[str, Tensor]], dict[str, Tensor]]


def as_float32(outputs: dict[str, Tensor]) -> dict[str, Tensor]:
    """Postprocess hook: make sure every output buffer is float32."""
    out: dict[str, Tensor] = {}
    for name, t in outputs.items():
        arr = t.numpy()
        if arr.dtype == np.float32:
            out[name] = t
            continue
        out[name] = Tensor.from_array(name, arr.astype(np.float32))
        t.release()
    return out


class Model:
    """A compiled graph plus the scheduler that drives it.

    Inputs produced by `preprocess` are owned by the model and released as
    soon as the run that consumed them completes or is cancelled. Outputs are
    owned by the model too: `peek_output` lends them out until the next run,
    `release_outputs()` or `close()`.
    """

    def __init__(
        self,
        executor: SupportsGraphExecution,
        *,
        name: str,
        preprocess: Preprocess | None = None,
        postprocess: Postprocess | None = None,
        step_divisor: int = DEFAULT_STEP_DIVISOR,
    ) -> None:
        self.name = name
        self.executor = executor
        self.preprocess = preprocess
        self.postprocess = postprocess
        self.scheduler = StepScheduler(executor, name=name, step_divisor=step_divisor)
        self._owned_inputs: list[Tensor] = []
        self._outputs: dict[str, Tensor] | None = None

    @property
    def total_steps(self) -> int:
        return self.scheduler.total_steps

    @property
    def step_budget(self) -> int:
        return self.scheduler.step_budget

    @property
    def state(self) -> SchedulerState:
        return self.scheduler.state

    def predict_blocking(self, inputs: Any) -> dict[str, Tensor]:
        """Run every step on the calling thread and return the outputs (borrowed)."""
        self.scheduler.check_can_begin()
        self.release_outputs()
        tensors = self._prepare(inputs)
        try:
            self.scheduler.run_all(tensors)
        finally:
            self._release_owned_inputs()
        return dict(self._collect_outputs())

    def begin_incremental(self, inputs: Any) -> ExecutionSchedule:
        """Open a schedule over `inputs` without running any step.

        Raises:
            AlreadyScheduling: If a schedule of this model is still open.
        """
        self.scheduler.check_can_begin()
        self.release_outputs()
        tensors = self._prepare(inputs)
        try:
            return self.scheduler.begin(tensors)
        except Exception:
            self._release_owned_inputs()
            raise

    def advance(self, schedule: ExecutionSchedule, step_budget: int | None = None) -> Outcome:
        """Run the next slice of `schedule`; see `StepScheduler.advance`."""
        outcome = self.scheduler.advance(schedule, step_budget)
        if outcome is Outcome.COMPLETE:
            self._release_owned_inputs()
            self._collect_outputs()
        return outcome

    def cancel(self, schedule: ExecutionSchedule) -> None:
        """Abandon `schedule` and free the inputs it held.

        No-op unless `schedule` is the one currently open on this model.
        """
        if schedule is not self.scheduler.current_schedule or schedule.finished:
            return
        self.scheduler.cancel(schedule)
        self._release_owned_inputs()

    def discard(self, schedule: ExecutionSchedule) -> None:
        """Drop everything `schedule` still holds on this model.

        Cancels it while open, or releases its outputs once complete. A
        schedule that has already been superseded by another run is left alone.
        """
        if schedule is not self.scheduler.current_schedule:
            return
        if schedule.finished:
            self.release_outputs()
        else:
            self.cancel(schedule)

    def peek_output(self, name: str) -> Tensor:
        """Return output `name` of the completed run without transferring ownership.

        Raises:
            OutputNotReady: If the model is not in the COMPLETE state.
        """
        if self.scheduler.state is not SchedulerState.COMPLETE or self._outputs is None:
            raise OutputNotReady(f"{self.name}: output {name!r} read before completion")
        return self._outputs[name]

    def release_outputs(self) -> None:
        """Free the outputs of the last run (COMPLETE -> IDLE)."""
        if self._outputs is not None:
            release_all(self._outputs.values())
            self._outputs = None
        if self.scheduler.state is SchedulerState.COMPLETE:
            self.scheduler.reset()

    def close(self) -> None:
        schedule = self.scheduler.current_schedule
        if schedule is not None:
            self.cancel(schedule)
        self.release_outputs()

    def _prepare(self, inputs: Any) -> Mapping[str, Tensor]:
        if self.preprocess is None:
            return inputs
        tensors = self.preprocess(inputs)
        self._owned_inputs = list(tensors.values())
        return tensors

    def _release_owned_inputs(self) -> None:
        release_all(self._owned_inputs)
        self._owned_inputs = []

    def _collect_outputs(self) -> dict[str, Tensor]:
        if self._outputs is None:
            outputs = {name: self.executor.read_output(name) for name in self.executor.output_names}
            if self.postprocess is not None:
                outputs = self.postprocess(outputs)
            self._outputs = outputs
        return self._outputs
