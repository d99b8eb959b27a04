from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Union

from .dsl import CompiledCondition, compile_condition
from .dsl_errors import DslError, DslTimeoutError, DslValidationError
from .dsl_runtime import time_limit
from .types import EvaluationFailure

__all__ = ["DEFAULT_CPU_SECONDS", "MAX_ABANDONED_WORKERS", "evaluate", "is_match"]

DEFAULT_CPU_SECONDS = 0.25
MAX_ABANDONED_WORKERS = 8

PredicateLike = Union[str, CompiledCondition, Callable[[Any], Any]]

# workers of timed-out callables that may still be running
_ABANDONED: list[threading.Thread] = []
_ABANDONED_GUARD = threading.Lock()


def _running_abandoned() -> int:
    with _ABANDONED_GUARD:
        _ABANDONED[:] = [worker for worker in _ABANDONED if worker.is_alive()]
        return len(_ABANDONED)


def _run_callable(predicate: Callable[[Any], Any], value: Any, timeout: Optional[float]) -> Any:
    if _running_abandoned() >= MAX_ABANDONED_WORKERS:
        raise DslTimeoutError(
            f"{MAX_ABANDONED_WORKERS} timed-out predicates are still running; refusing to start another"
        )
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["result"] = predicate(value)
        except Exception as exc:  # noqa: BLE001 - reported to the caller below
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name="riskdecision-predicate", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        with _ABANDONED_GUARD:
            _ABANDONED.append(worker)
        raise DslTimeoutError(f"predicate did not finish within {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def evaluate(
    predicate: PredicateLike,
    value: Any,
    *,
    cpu: Optional[float] = DEFAULT_CPU_SECONDS,
    elapsed: Optional[float] = None,
) -> bool | EvaluationFailure:
    """Apply ``predicate`` to ``value`` under a time budget.

    Compiled conditions are checked against the CPU budget of the calling
    thread at every node they visit. Plain callables run on a worker thread
    joined with a wall-clock timeout (``elapsed``, falling back to ``cpu``).
    A callable that overruns cannot be interrupted: its daemon worker keeps
    running (and using CPU) until the callable returns on its own. While
    ``MAX_ABANDONED_WORKERS`` such workers are alive, further callables are
    reported as timeouts without being started.

    Every failure is returned as an :class:`EvaluationFailure`; nothing is
    raised to the caller.
    """

    try:
        if isinstance(predicate, str):
            predicate = compile_condition(predicate)
        if isinstance(predicate, CompiledCondition):
            if not predicate.ok:
                return EvaluationFailure("compile", predicate.error or "condition did not compile")
            with time_limit(cpu=cpu, elapsed=elapsed):
                result = predicate(value)
        elif callable(predicate):
            timeout = elapsed if elapsed is not None else cpu
            result = _run_callable(predicate, value, timeout)
        else:
            return EvaluationFailure("compile", f"predicate of type {type(predicate).__name__} is not callable")
    except DslTimeoutError as exc:
        return EvaluationFailure("timeout", str(exc))
    except DslValidationError as exc:
        return EvaluationFailure("compile", str(exc))
    except DslError as exc:
        return EvaluationFailure("runtime", str(exc))
    except Exception as exc:  # noqa: BLE001 - user predicates may raise anything
        return EvaluationFailure("runtime", f"{type(exc).__name__}: {exc}")

    if isinstance(result, bool):
        return result
    return EvaluationFailure("type", f"condition returned {type(result).__name__}, expected a boolean")


def is_match(outcome: bool | EvaluationFailure) -> bool:
    return outcome is True
