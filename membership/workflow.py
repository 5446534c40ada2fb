import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import PartiallyAppliedError

logger = logging.getLogger(__name__)


def _never_done() -> bool:
    return False


@dataclass
class Step:
    name: str
    apply: Callable[[], Any]
    is_done: Callable[[], bool] = _never_done


@dataclass
class StepRunner:
    """Runs independent writes in a fixed order under one reference.

    A step whose ``is_done`` check passes is skipped, so a request that
    failed halfway can be re-run with the same reference. Once any step has
    been applied, a later failure surfaces as ``PartiallyAppliedError``
    instead of the raw exception.
    """

    reference: str
    steps: list[Step] = field(default_factory=list)

    def add(self, name: str, apply: Callable[[], Any], is_done: Callable[[], bool] = _never_done) -> "StepRunner":
        self.steps.append(Step(name=name, apply=apply, is_done=is_done))
        return self

    def run(self) -> dict[str, Any]:
        completed: list[str] = []
        results: dict[str, Any] = {}
        for step in self.steps:
            if step.is_done():
                logger.info("%s: step '%s' already applied, skipping", self.reference, step.name)
                completed.append(step.name)
                continue
            try:
                results[step.name] = step.apply()
            except Exception as e:
                if not completed:
                    raise
                logger.error("%s: step '%s' failed after %s", self.reference, step.name, completed)
                raise PartiallyAppliedError(self.reference, completed, step.name, e) from e
            completed.append(step.name)
        return results
