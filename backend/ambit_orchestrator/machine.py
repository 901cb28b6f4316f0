"""Forward-only phase machine shared by every workflow.

Transitions perform the side effects and return the next phase; the runner
itself never touches a provider. Expected failures come back as failed steps,
while a transition that names an undeclared phase or moves backwards raises
MachineError.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

FAILURE_KINDS = {
    "cancelled",
    "conflict",
    "deploy_failed",
    "invalid_policy",
    "missing_state",
    "not_found",
    "permission_denied",
    "timeout",
    "validation_failed",
}


class MachineError(RuntimeError):
    pass


@dataclass(frozen=True)
class Step:
    phase: Optional[str] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def to(cls, phase: str) -> "Step":
        return cls(phase=phase)

    @classmethod
    def fail(cls, message: str, kind: str = "validation_failed", detail: Optional[str] = None) -> "Step":
        if kind not in FAILURE_KINDS:
            raise MachineError(f"Unknown failure kind: {kind}")
        return cls(error=message, kind=kind, detail=detail)


Transition = Callable[[Any], Step]


@dataclass
class Machine:
    name: str
    phases: Sequence[Tuple[str, str]]
    terminal: str
    transitions: Dict[str, Transition]

    def __post_init__(self) -> None:
        declared = [phase for phase, _ in self.phases]
        if self.terminal in declared:
            raise MachineError(f"{self.name}: terminal phase '{self.terminal}' listed as a working phase")
        missing = [phase for phase in declared if phase not in self.transitions]
        extra = [phase for phase in self.transitions if phase not in declared]
        if missing or extra:
            raise MachineError(f"{self.name}: transitions missing={missing} unexpected={extra}")
        self._order = declared + [self.terminal]

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def index(self, phase: Optional[str]) -> int:
        if phase not in self._order:
            raise MachineError(f"{self.name}: unknown phase '{phase}'")
        return self._order.index(phase)

    def label(self, phase: str) -> str:
        for candidate, label in self.phases:
            if candidate == phase:
                return label
        return phase

    def skipped_labels(self, start: str) -> List[str]:
        stop = self.index(start)
        return [label for _, label in self.phases[:stop]]


def run_machine(machine: Machine, initial: str, ctx: Any) -> Step:
    phase = initial
    current = machine.index(phase)
    while phase != machine.terminal:
        step = machine.transitions[phase](ctx)
        if not step.ok:
            logger.info("%s stopped at %s: %s", machine.name, phase, step.error)
            return step
        following = machine.index(step.phase)
        if following <= current:
            raise MachineError(f"{machine.name}: transition from '{phase}' returned '{step.phase}'")
        logger.debug("%s: %s -> %s", machine.name, phase, step.phase)
        phase, current = step.phase, following
    return Step.to(phase)


@dataclass
class RunReport:
    step: Step
    start: Optional[str] = None
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.step.ok


def execute(machine: Machine, hydrate: Callable[[Any], Step], ctx: Any) -> RunReport:
    """Hydrate to find the resume phase, then run to the terminal phase."""
    start = hydrate(ctx)
    if not start.ok:
        return RunReport(step=start)
    skipped = machine.skipped_labels(start.phase)
    for label in skipped:
        logger.info("%s: %s (already done)", machine.name, label)
    return RunReport(step=run_machine(machine, start.phase, ctx), start=start.phase, skipped=skipped)
