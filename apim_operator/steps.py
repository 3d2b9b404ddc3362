"""
The StepSequencer runs an ordered list of reconcile steps and stops at the
first step that reports it is not done yet.

A step is a function of the Session. It returns None (or CONTINUE) when its
part of the desired state is in place, or a requeue result when it performed a
side effect or is waiting on something. A step that records progress persists
its status marker before returning, and every step must be safe to run again
from the start, so an interrupted pass resumes where it stopped.
"""

# Standard
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Iterable, Optional

# First Party
import alog

# Local
from .session import Session

log = alog.use_channel("STEPS")


@dataclass(frozen=True)
class StepResult:
    """Outcome of a step or of a whole sequence"""

    requeue: bool = False
    requeue_after: Optional[timedelta] = None


CONTINUE = StepResult()


def requeue_now() -> StepResult:
    """Stop the sequence and run again immediately"""
    return StepResult(requeue=True, requeue_after=timedelta(0))


def requeue_after(seconds: float) -> StepResult:
    """Stop the sequence and run again after the given delay"""
    return StepResult(requeue=True, requeue_after=timedelta(seconds=seconds))


# Signature of a step function
STEP_FUNCTION = Callable[[Session], Optional[StepResult]]


@dataclass(frozen=True)
class Step:
    """A named step"""

    name: str
    func: STEP_FUNCTION

    def __call__(self, session: Session) -> StepResult:
        return self.func(session) or CONTINUE


class StepSequencer:
    """Runs steps strictly in declared order"""

    def __init__(self, steps: Iterable[Step], name: str = "steps"):
        self.steps = list(steps)
        self.name = name
        names = [step.name for step in self.steps]
        assert len(names) == len(set(names)), f"Duplicate step names in {names}"

    def run(self, session: Session) -> StepResult:
        """Run every step until one asks to requeue

        Args:
            session:  Session
                The session for the current reconciliation

        Returns:
            result:  StepResult
                The first stop result, or CONTINUE if all steps completed
        """
        for step in self.steps:
            log.debug2("[%s] Running step %s", self.name, step.name)
            result = step(session)
            if result.requeue:
                log.debug(
                    "[%s] Step %s not complete. Requeue after %s",
                    self.name,
                    step.name,
                    result.requeue_after,
                )
                return result
        log.debug2("[%s] All steps complete", self.name)
        return CONTINUE
