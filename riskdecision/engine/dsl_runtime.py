from __future__ import annotations

import math
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

from .dsl_errors import DslTimeoutError
from .dsl_utils import BOUND_NAMES, CONSTANT_NAMES

__all__ = [
    "EvaluationBudget",
    "build_namespace",
    "current_budget",
    "is_missing",
    "time_limit",
]


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        return True
    return False


_BUILTINS: dict[str, Any] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "is_missing": is_missing,
}


def build_namespace(value: Any) -> dict[str, Any]:
    namespace: dict[str, Any] = dict(CONSTANT_NAMES)
    namespace.update(_BUILTINS)
    for name in BOUND_NAMES:
        namespace[name] = value
    return namespace


class EvaluationBudget:
    """CPU (and optional wall-clock) allowance for a single evaluation.

    CPU time is measured per thread, so concurrent evaluations on other
    threads do not consume this budget.
    """

    __slots__ = ("cpu", "elapsed", "_cpu_deadline", "_wall_deadline")

    def __init__(self, cpu: Optional[float], elapsed: Optional[float] = None) -> None:
        self.cpu = cpu
        self.elapsed = elapsed
        self._cpu_deadline = time.thread_time() + cpu if cpu is not None else None
        self._wall_deadline = time.monotonic() + elapsed if elapsed is not None else None

    def exhausted(self) -> bool:
        if self._cpu_deadline is not None and time.thread_time() >= self._cpu_deadline:
            return True
        if self._wall_deadline is not None and time.monotonic() >= self._wall_deadline:
            return True
        return False

    def check(self) -> None:
        if self.exhausted():
            raise DslTimeoutError(f"evaluation exceeded its budget (cpu={self.cpu}s, elapsed={self.elapsed}s)")


_ACTIVE_BUDGET: ContextVar[Optional[EvaluationBudget]] = ContextVar("riskdecision_budget", default=None)


def current_budget() -> Optional[EvaluationBudget]:
    return _ACTIVE_BUDGET.get()


@contextmanager
def time_limit(cpu: Optional[float] = 0.25, elapsed: Optional[float] = None) -> Iterator[EvaluationBudget]:
    """Install an evaluation budget for the duration of the block.

    The previous budget (normally none) is restored on every exit path.
    """

    budget = EvaluationBudget(cpu, elapsed)
    token = _ACTIVE_BUDGET.set(budget)
    try:
        yield budget
    finally:
        _ACTIVE_BUDGET.reset(token)
