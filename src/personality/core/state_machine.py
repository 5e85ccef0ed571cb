from __future__ import annotations

from enum import Enum
from typing import Dict, List

from ..domain.events import GenerationEvent, OutputsEvent, StreamEvent


class RunState(str, Enum):
    ADMITTING = "admitting"
    INVOKING = "invoking"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


# Run lifecycle transitions
RUN_TRANSITIONS: Dict[RunState, List[RunState]] = {
    RunState.ADMITTING: [RunState.INVOKING, RunState.FAILED],
    RunState.INVOKING: [RunState.STREAMING, RunState.FAILED],
    RunState.STREAMING: [RunState.FINALIZING, RunState.FAILED],
    RunState.FINALIZING: [RunState.DONE, RunState.FAILED],
    RunState.DONE: [],
    RunState.FAILED: [],
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: RunState, target: RunState) -> None:
        super().__init__(f"Invalid run transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def is_valid_transition(current: RunState, target: RunState) -> bool:
    return target in RUN_TRANSITIONS.get(current, [])


class GenerationTracker:
    """Tracks whether the stream is currently inside the ``output`` phase.

    Only ``generation`` events labelled ``output`` move the flag; other
    phases are internal scaffolding and leave it untouched. ``chunk``
    events never mutate state, and an ``outputs`` event marks the run
    terminal whatever the flag says.
    """

    def __init__(self) -> None:
        self.inside_final_output = False
        self.ever_opened = False
        self.forced = False
        self.terminal = False

    def observe(self, event: StreamEvent) -> bool:
        """Apply ``event`` and return the visibility flag as seen by it."""

        if isinstance(event, GenerationEvent):
            if event.opens_output:
                self.inside_final_output = True
                self.ever_opened = True
            elif event.closes_output:
                self.inside_final_output = False
        elif isinstance(event, OutputsEvent):
            self.terminal = True
        return self.inside_final_output

    def force_open(self) -> None:
        self.inside_final_output = True
        self.forced = True
