from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional, Union

if TYPE_CHECKING:  # pragma: no cover
    from .dsl import CompiledCondition

DslMode = Literal["strict", "warn"]
FailureKind = Literal["compile", "timeout", "runtime", "type"]

Predicate = Union["CompiledCondition", Callable[[Any], Any]]


class RuleKind(str, Enum):
    SCORE = "overall_score"
    ASSESSMENT = "assessment"
    DEFAULT = "else"

    @classmethod
    def parse(cls, value: Any) -> Optional["RuleKind"]:
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == text:
                return kind
        return None


@dataclass(slots=True)
class RuleDefinition:
    kind: str
    decision: str
    condition: str = ""
    metric: Optional[str] = None
    predicate: Optional[Predicate] = None
    key: str = ""

    @property
    def is_default(self) -> bool:
        return self.kind == RuleKind.DEFAULT


@dataclass(slots=True)
class DecisionCategory:
    name: str
    color: str
    lower_limit: Optional[float] = None
    upper_limit: Optional[float] = None
    id: Optional[int] = None

    @property
    def has_range(self) -> bool:
        return self.lower_limit is not None or self.upper_limit is not None


@dataclass(slots=True)
class PackageDecisionState:
    package_name: str
    decision_id: Optional[int] = None
    decision: Optional[str] = None
    decision_by: Optional[str] = None
    decision_date: Optional[datetime] = None

    @property
    def decided(self) -> bool:
        return self.decision_id is not None


@dataclass(slots=True)
class AssignmentResult:
    decision: Optional[str]
    decision_rule: Optional[str] = None


@dataclass(frozen=True, slots=True)
class EvaluationFailure:
    """Outcome of an evaluation that could not produce a boolean.

    Failures are falsy so callers can treat them as a non-match directly.
    """

    kind: FailureKind
    message: str

    def __bool__(self) -> bool:
        return False


@dataclass(slots=True)
class ValidationIssue:
    level: Literal["error", "warning"]
    code: str
    where: str
    msg: str
    hint: str | None = None


@dataclass(slots=True)
class DecisionConfig:
    categories: list[DecisionCategory]
    rules: list[RuleDefinition]
    raw: dict[str, Any]


@dataclass(slots=True)
class LoadResult:
    status: Literal["ok", "invalid", "error"]
    mode: DslMode
    config: DecisionConfig | None
    issues: list[ValidationIssue]
    counts: dict[str, int]


@dataclass(slots=True)
class DslPolicy:
    """Logs each distinct rule warning once."""

    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("riskdecision.engine.dsl"))
    _warned_keys: set[str] = field(default_factory=set, init=False)

    def warn_once(self, message: str, key: Optional[str] = None) -> None:
        cache_key = key or message
        if cache_key in self._warned_keys:
            return
        self._warned_keys.add(cache_key)
        self.logger.warning(message)
