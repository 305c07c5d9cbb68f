"""Step-budgeted, resumable execution of a compiled graph.

`StepScheduler` turns one graph run into a state machine:

    IDLE --begin--> RUNNING --advance (CONTINUING)--> RUNNING
    RUNNING --advance (COMPLETE)--> COMPLETE --begin--> RUNNING
    RUNNING --cancel--> IDLE,  COMPLETE --reset--> IDLE

Each `advance` call runs at most `step_budget` graph steps and returns, so
the caller can yield to its frame loop between calls. Nothing suspends in
the middle of a step.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from stepwise_sam.errors import AlreadyScheduling, ScheduleClosed
from stepwise_sam.runtime.executor import SupportsGraphExecution
from stepwise_sam.runtime.tensors import Tensor

LOG = logging.getLogger(__name__)

DEFAULT_STEP_DIVISOR = 5


class Outcome(Enum):
    """Result of one `advance` call."""

    CONTINUING = "continuing"
    COMPLETE = "complete"


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"


def default_step_budget(total_steps: int, divisor: int = DEFAULT_STEP_DIVISOR) -> int:
    """Steps per `advance` call: `total_steps // divisor`, at least 1."""
    return max(1, int(total_steps) // max(1, int(divisor)))


class ExecutionSchedule:
    """Opaque cursor over one run of a graph.

    Created by `StepScheduler.begin`; only the scheduler that created it can
    advance it. Exposes read-only progress counters.
    """

    __slots__ = ("owner", "total_steps", "steps_done", "_cursor", "_open")

    def __init__(self, owner: StepScheduler, cursor: Any, total_steps: int) -> None:
        self.owner = owner
        self.total_steps = total_steps
        self.steps_done = 0
        self._cursor = cursor
        self._open = True

    @property
    def finished(self) -> bool:
        return not self._open

    def __repr__(self) -> str:
        return (
            f"ExecutionSchedule({self.owner.name}, {self.steps_done}/{self.total_steps}, "
            f"{'open' if self._open else 'closed'})"
        )


class StepScheduler:
    """Drives a `SupportsGraphExecution` backend to completion or in budgeted slices.

    At most one schedule is open at a time. Callers that share a scheduler
    between tasks must serialize access themselves.
    """

    def __init__(
        self,
        executor: SupportsGraphExecution,
        *,
        name: str,
        step_divisor: int = DEFAULT_STEP_DIVISOR,
    ) -> None:
        self.executor = executor
        self.name = name
        self.total_steps = int(executor.step_count)
        # Fixed heuristic, not adapted to observed frame time.
        self.step_budget = default_step_budget(self.total_steps, step_divisor)
        self._state = SchedulerState.IDLE
        self._schedule: ExecutionSchedule | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def current_schedule(self) -> ExecutionSchedule | None:
        return self._schedule

    def run_all(self, inputs: Mapping[str, Tensor]) -> None:
        """Execute every step synchronously; ends in COMPLETE.

        The run keeps its cursor as the current schedule, so the next
        `reset()` frees whatever the executor captured for it.
        """
        self.check_can_begin()
        self.reset()
        cursor = self.executor.begin_stepwise(inputs)
        try:
            self.executor.advance_cursor(cursor, self.total_steps)
        except Exception:
            self.executor.release_cursor(cursor)
            raise
        schedule = ExecutionSchedule(self, cursor, self.total_steps)
        schedule.steps_done = self.total_steps
        schedule._open = False
        self._schedule = schedule
        self._state = SchedulerState.COMPLETE
        LOG.debug("%s: ran %s steps blocking", self.name, self.total_steps)

    def begin(self, inputs: Mapping[str, Tensor]) -> ExecutionSchedule:
        """Install `inputs` and open a schedule without running any step."""
        self.check_can_begin()
        self.reset()
        cursor = self.executor.begin_stepwise(inputs)
        self._schedule = ExecutionSchedule(self, cursor, self.total_steps)
        self._state = SchedulerState.RUNNING
        LOG.debug(
            "%s: schedule opened (%s steps, budget %s)",
            self.name,
            self.total_steps,
            self.step_budget,
        )
        return self._schedule

    def advance(self, schedule: ExecutionSchedule, step_budget: int | None = None) -> Outcome:
        """Run up to `step_budget` steps of `schedule` from where it stopped.

        Raises:
            ScheduleClosed: If `schedule` is finished, cancelled, or not the
                schedule currently open on this scheduler.
        """
        if schedule is not self._schedule or schedule.finished:
            raise ScheduleClosed(f"{self.name}: schedule is not open on this model")
        budget = max(1, int(step_budget if step_budget is not None else self.step_budget))
        before = schedule.steps_done
        done = self.executor.advance_cursor(schedule._cursor, budget)
        schedule.steps_done = min(schedule.total_steps, before + budget)
        if not done:
            LOG.debug("%s: %s/%s steps", self.name, schedule.steps_done, schedule.total_steps)
            return Outcome.CONTINUING
        schedule.steps_done = schedule.total_steps
        schedule._open = False
        self._state = SchedulerState.COMPLETE
        LOG.debug("%s: schedule complete", self.name)
        return Outcome.COMPLETE

    def cancel(self, schedule: ExecutionSchedule) -> None:
        """Abandon an open schedule and free its cursor (RUNNING -> IDLE)."""
        if schedule is not self._schedule or schedule.finished:
            return
        schedule._open = False
        self.executor.release_cursor(schedule._cursor)
        self._schedule = None
        self._state = SchedulerState.IDLE
        LOG.debug(
            "%s: schedule cancelled at %s/%s", self.name, schedule.steps_done, schedule.total_steps
        )

    def reset(self) -> None:
        """Discard a completed run (COMPLETE -> IDLE); no-op when IDLE."""
        if self._state is SchedulerState.RUNNING:
            raise AlreadyScheduling(f"{self.name}: cannot reset while a schedule is open")
        if self._schedule is not None:
            self.executor.release_cursor(self._schedule._cursor)
            self._schedule = None
        self._state = SchedulerState.IDLE

    def check_can_begin(self) -> None:
        if self._state is SchedulerState.RUNNING:
            raise AlreadyScheduling(f"{self.name}: a schedule is already open")
