from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from .engine.categories import DecisionCategoryRegistry
from .engine.dsl_errors import ConfigurationMismatch
from .engine.evaluator import DEFAULT_CPU_SECONDS, evaluate
from .engine.loader import load_rules
from .engine.types import (
    AssignmentResult,
    DslPolicy,
    EvaluationFailure,
    PackageDecisionState,
    RuleDefinition,
    RuleKind,
)

AUTO_ASSIGNED = "Auto Assigned"
LOCK_STRIPES = 64

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("riskdecision.audit")


class MetricsProvider(Protocol):
    def get_package_score(self, name: str) -> Optional[float]: ...

    def get_package_assessment_bundle(self, name: str) -> Mapping[str, Any]: ...


class DecisionStore(Protocol):
    def read_decision_state(self, name: str) -> Optional[PackageDecisionState]: ...

    def write_decision(
        self,
        name: str,
        decision: Optional[str],
        decision_by: str,
        decision_date: datetime,
        *,
        only_if_undecided: bool = True,
    ) -> bool: ...

    def append_comment(
        self,
        package: str,
        user_name: str,
        user_role: str,
        comment: str,
        comment_type: str,
        added_on: datetime,
    ) -> None: ...


@dataclass(slots=True)
class EngineConfig:
    cpu_budget: Optional[float] = DEFAULT_CPU_SECONDS
    elapsed_budget: Optional[float] = None
    decision_by: str = AUTO_ASSIGNED
    comment_role: str = "admin"
    comment_type: str = "o"


@dataclass(slots=True)
class BatchReport:
    results: dict[str, AssignmentResult] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def assigned(self) -> dict[str, str]:
        """Packages that received a decision during this pass."""

        return {
            name: result.decision
            for name, result in self.results.items()
            if result.decision_rule is not None and result.decision is not None
        }


@dataclass(slots=True)
class _Match:
    index: int
    decision: str
    log_message: str
    comment: str


class DecisionEngine:
    """Assign decisions to undecided packages from an ordered rule list."""

    def __init__(
        self,
        store: Any,
        *,
        metrics: MetricsProvider | None = None,
        config: EngineConfig | None = None,
        policy: DslPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._metrics: MetricsProvider = metrics or store
        self.config = config or EngineConfig()
        self.policy = policy or DslPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # packages hash onto a fixed set of locks; two packages may share one
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def load_rules(self) -> list[RuleDefinition]:
        return load_rules(self._store, policy=self.policy)

    def load_categories(self) -> DecisionCategoryRegistry:
        return DecisionCategoryRegistry.load(self._store)

    def _package_lock(self, package: str) -> threading.Lock:
        return self._locks[hash(package) % len(self._locks)]

    def assign_decision(self, rules: Sequence[RuleDefinition], package: str) -> AssignmentResult:
        with self._package_lock(package):
            state = self._store.read_decision_state(package)
            if state is not None and state.decided:
                return AssignmentResult(decision=state.decision)

            match = self._first_match(rules, package)
            if match is None:
                return AssignmentResult(decision=None)

            now = self._clock()
            written = self._store.write_decision(
                package,
                match.decision,
                self.config.decision_by,
                now,
                only_if_undecided=True,
            )
            if not written:
                current = self._store.read_decision_state(package)
                logger.info("Package %s was decided elsewhere; rule %d not applied", package, match.index)
                return AssignmentResult(decision=current.decision if current is not None else None)

            audit_logger.info(match.log_message)
            self._store.append_comment(
                package,
                self.config.decision_by,
                self.config.comment_role,
                match.comment,
                self.config.comment_type,
                now,
            )
            return AssignmentResult(decision=match.decision, decision_rule=f"Rule {match.index}")

    def _first_match(self, rules: Sequence[RuleDefinition], package: str) -> Optional[_Match]:
        bundle: Mapping[str, Any] = {}
        if any(rule.kind == RuleKind.ASSESSMENT for rule in rules):
            bundle = self._metrics.get_package_assessment_bundle(package) or {}
        score: Optional[float] = None
        score_loaded = False

        for index, rule in enumerate(rules, start=1):
            kind = RuleKind.parse(rule.kind)
            if kind is RuleKind.DEFAULT:
                return _Match(
                    index=index,
                    decision=rule.decision,
                    log_message=(
                        f"Decision for the package {package} was assigned {rule.decision} by default "
                        "because all conditions were passed by the decision rules."
                    ),
                    comment=(
                        f"Decision was assigned {rule.decision} by default "
                        "because all conditions were passed by the decision rules."
                    ),
                )
            if kind is None:
                self.policy.warn_once(
                    f"Unable to apply rule {index} for {rule.metric or 'the risk score'}: unknown rule type {rule.kind!r}",
                    key=f"rule:{index}:{rule.kind}:kind",
                )
                continue
            if rule.predicate is None:
                self.policy.warn_once(
                    f"Unable to apply rule {index}: no predicate for `{rule.condition}`",
                    key=f"rule:{index}:{rule.condition}:predicate",
                )
                continue

            if kind is RuleKind.SCORE:
                if not score_loaded:
                    score = self._metrics.get_package_score(package)
                    score_loaded = True
                subject = "the risk score"
                value: Any = score
            else:
                if not rule.metric:
                    self.policy.warn_once(
                        f"Unable to apply rule {index}: assessment rule without a metric",
                        key=f"rule:{index}:metric",
                    )
                    continue
                subject = f"the {rule.metric} assessment"
                value = bundle.get(rule.metric)

            outcome = evaluate(
                rule.predicate,
                value,
                cpu=self.config.cpu_budget,
                elapsed=self.config.elapsed_budget,
            )
            if outcome is True:
                return _Match(
                    index=index,
                    decision=rule.decision,
                    log_message=(
                        f"Decision for the package {package} was assigned {rule.decision} "
                        f"because {subject} returned TRUE for `{rule.condition}`"
                    ),
                    comment=(
                        f"Decision was assigned '{rule.decision}' by decision rules "
                        f"because {subject} returned TRUE for `{rule.condition}`"
                    ),
                )
            if isinstance(outcome, EvaluationFailure):
                self._report_failure(index, rule, package, outcome)
        return None

    def _report_failure(self, index: int, rule: RuleDefinition, package: str, failure: EvaluationFailure) -> None:
        if failure.kind == "compile":
            self.policy.warn_once(
                f"Rule {index} condition `{rule.condition}` does not compile: {failure.message}",
                key=f"rule:{index}:{rule.condition}:compile",
            )
        elif failure.kind == "timeout":
            logger.warning("Rule %d timed out for package %s: %s", index, package, failure.message)
        else:
            logger.debug("Rule %d did not evaluate for package %s (%s): %s", index, package, failure.kind, failure.message)

    def assign_all(
        self,
        packages: Iterable[str] | None = None,
        *,
        rules: Sequence[RuleDefinition] | None = None,
    ) -> BatchReport:
        """Run one assignment pass; rules are loaded once for the whole pass."""

        active_rules = list(rules) if rules is not None else self.load_rules()
        if packages is None:
            names = [record.name for record in self._store.list_packages(undecided_only=True)]
        else:
            names = list(packages)
        report = BatchReport()
        for name in names:
            try:
                report.results[name] = self.assign_decision(active_rules, name)
            except ConfigurationMismatch:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Decision assignment failed for package %s", name)
                report.failures[name] = str(exc)
        logger.info(
            "Assignment pass finished: packages=%d assigned=%d failures=%d",
            len(names),
            len(report.assigned),
            len(report.failures),
        )
        return report
