from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from riskdecision.engine.dsl_errors import ConfigurationMismatch
from riskdecision.engine.loader import build_rule
from riskdecision.engine.types import AssignmentResult, RuleDefinition, RuleKind
from riskdecision.rule_engine import AUTO_ASSIGNED, LOCK_STRIPES, DecisionEngine, EngineConfig
from riskdecision.store import AssessmentStore

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _rules() -> list[RuleDefinition]:
    return [
        build_rule(RuleKind.SCORE, "Reject", "> 0.8", index=1),
        build_rule(RuleKind.ASSESSMENT, "Review", "== FALSE", "license_ok", index=2),
        build_rule(RuleKind.DEFAULT, "Approve", index=3),
    ]


def _engine(store: AssessmentStore, **kwargs: Any) -> DecisionEngine:
    return DecisionEngine(store, clock=lambda: FIXED_NOW, **kwargs)


def _add_package(store: AssessmentStore, name: str, score: Optional[float], **metrics: Any) -> None:
    store.upsert_package(name, score)
    for metric, value in metrics.items():
        store.set_metric(name, metric, value)


def test_end_to_end_assignment(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", 0.9, license_ok=True)
    _add_package(store, "pkgB", 0.2, license_ok=False)
    _add_package(store, "pkgC", 0.1, license_ok=True)
    engine = _engine(store)
    rules = _rules()

    assert engine.assign_decision(rules, "pkgA") == AssignmentResult("Reject", "Rule 1")
    assert engine.assign_decision(rules, "pkgB") == AssignmentResult("Review", "Rule 2")
    assert engine.assign_decision(rules, "pkgC") == AssignmentResult("Approve", "Rule 3")

    state = store.read_decision_state("pkgB")
    assert state is not None
    assert state.decision == "Review"
    assert state.decision_by == AUTO_ASSIGNED
    assert state.decision_date == FIXED_NOW

    comments = store.list_comments("pkgB")
    assert len(comments) == 1
    assert comments[0].user_name == "Auto Assigned"
    assert comments[0].user_role == "admin"
    assert comments[0].comment_type == "o"
    assert comments[0].comment == (
        "Decision was assigned 'Review' by decision rules because the license_ok assessment "
        "returned TRUE for `== FALSE`"
    )
    assert "by default" in store.list_comments("pkgC")[0].comment


def test_assignment_is_idempotent(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", 0.9)
    engine = _engine(store)
    rules = _rules()

    first = engine.assign_decision(rules, "pkgA")
    second = engine.assign_decision(rules, "pkgA")

    assert first == AssignmentResult("Reject", "Rule 1")
    assert second == AssignmentResult("Reject", None)
    assert len(store.list_comments("pkgA")) == 1


def test_decided_package_is_never_overwritten(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", 0.95)
    store.write_decision("pkgA", "Approve", "reviewer", datetime(2024, 1, 1, tzinfo=timezone.utc))

    result = _engine(store).assign_decision(_rules(), "pkgA")

    assert result == AssignmentResult("Approve", None)
    state = store.read_decision_state("pkgA")
    assert state is not None and state.decision_by == "reviewer"
    assert store.list_comments("pkgA") == []


def test_first_matching_rule_wins(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", 0.9)
    rules = [
        build_rule(RuleKind.SCORE, "Review", "> 0.5", index=1),
        build_rule(RuleKind.SCORE, "Reject", "> 0.8", index=2),
    ]

    assert _engine(store).assign_decision(rules, "pkgA") == AssignmentResult("Review", "Rule 1")


def test_no_match_without_default_leaves_package_undecided(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", 0.1)

    result = _engine(store).assign_decision(_rules()[:2], "pkgA")

    assert result == AssignmentResult(None, None)
    state = store.read_decision_state("pkgA")
    assert state is not None and not state.decided
    assert store.list_comments("pkgA") == []


def test_unknown_rule_kind_is_skipped(store: AssessmentStore, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    _add_package(store, "pkgA", 0.9)
    rules = [build_rule("metadata", "Reject", "> 0", index=1), build_rule(RuleKind.DEFAULT, "Approve", index=2)]

    result = _engine(store).assign_decision(rules, "pkgA")

    assert result == AssignmentResult("Approve", "Rule 2")
    assert any("Unable to apply rule 1" in r.getMessage() for r in caplog.records)


def test_failing_conditions_are_non_matches(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", None, license_ok="unknown")
    rules = [
        build_rule(RuleKind.SCORE, "Reject", "> 0.8", index=1),
        build_rule(RuleKind.SCORE, "Reject", "x >>> 1", index=2),
        build_rule(RuleKind.ASSESSMENT, "Reject", "> 1", "license_ok", index=3),
        build_rule(RuleKind.ASSESSMENT, "Review", "is_missing", "maintainer", index=4),
    ]

    assert _engine(store).assign_decision(rules, "pkgA") == AssignmentResult("Review", "Rule 4")


def test_slow_predicate_times_out_and_falls_through(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", 0.9)
    slow = RuleDefinition(
        kind="overall_score",
        decision="Reject",
        condition="slow",
        predicate=lambda value: time.sleep(2.0) or True,
    )
    rules = [slow, build_rule(RuleKind.DEFAULT, "Approve", index=2)]
    engine = _engine(store, config=EngineConfig(cpu_budget=0.05))

    started = time.monotonic()
    result = engine.assign_decision(rules, "pkgA")

    assert result == AssignmentResult("Approve", "Rule 2")
    assert time.monotonic() - started < 1.5


def test_audit_log_records_assignment(store: AssessmentStore, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="riskdecision.audit")
    _add_package(store, "pkgA", 0.9)

    _engine(store).assign_decision(_rules(), "pkgA")

    messages = [r.getMessage() for r in caplog.records if r.name == "riskdecision.audit"]
    assert messages == [
        "Decision for the package pkgA was assigned Reject because the risk score returned TRUE for `> 0.8`"
    ]


class _RacingStore(AssessmentStore):
    """Records a reviewer decision right before the engine's write lands."""

    def write_decision(self, name, decision, decision_by, decision_date, *, only_if_undecided=True):  # type: ignore[override]
        if decision_by == AUTO_ASSIGNED:
            super().write_decision(name, "Approve", "reviewer", decision_date)
        return super().write_decision(
            name, decision, decision_by, decision_date, only_if_undecided=only_if_undecided
        )


def test_concurrent_reviewer_decision_wins(tmp_path, categories) -> None:
    store = _RacingStore(tmp_path / "race.sqlite")
    store.replace_categories(categories)
    _add_package(store, "pkgA", 0.9)

    result = _engine(store).assign_decision(_rules(), "pkgA")

    assert result == AssignmentResult("Approve", None)
    assert store.read_decision_state("pkgA").decision_by == "reviewer"
    assert store.list_comments("pkgA") == []


def test_assign_all_uses_persisted_rules(store: AssessmentStore) -> None:
    store.replace_rules(_rules())
    _add_package(store, "pkgA", 0.9)
    _add_package(store, "pkgB", 0.2, license_ok=False)
    _add_package(store, "pkgC", 0.1)
    store.write_decision("pkgC", "Reject", "reviewer", FIXED_NOW)

    report = _engine(store).assign_all()

    assert set(report.results) == {"pkgA", "pkgB"}
    assert report.assigned == {"pkgA": "Reject", "pkgB": "Review"}
    assert report.failures == {}


class _FlakyMetrics:
    def __init__(self, store: AssessmentStore) -> None:
        self._store = store

    def get_package_score(self, name: str) -> Optional[float]:
        if name == "broken":
            raise RuntimeError("score service unavailable")
        return self._store.get_package_score(name)

    def get_package_assessment_bundle(self, name: str) -> dict[str, Any]:
        return self._store.get_package_assessment_bundle(name)


def test_assign_all_isolates_package_failures(store: AssessmentStore) -> None:
    _add_package(store, "broken", 0.9)
    _add_package(store, "healthy", 0.9)
    engine = _engine(store, metrics=_FlakyMetrics(store))

    report = engine.assign_all(["broken", "healthy"], rules=_rules())

    assert report.failures == {"broken": "score service unavailable"}
    assert report.results["healthy"] == AssignmentResult("Reject", "Rule 1")
    assert not store.read_decision_state("broken").decided


def test_rule_referencing_missing_category_aborts_pass(store: AssessmentStore) -> None:
    _add_package(store, "pkgA", 0.9)
    rules = [build_rule(RuleKind.SCORE, "Quarantine", "> 0.5", index=1)]

    with pytest.raises(ConfigurationMismatch):
        _engine(store).assign_all(["pkgA"], rules=rules)


class _CountingMetrics:
    def __init__(self, score: Optional[float], bundle: dict[str, Any]) -> None:
        self._score = score
        self._bundle = bundle
        self.score_calls: list[str] = []
        self.bundle_calls: list[str] = []

    def get_package_score(self, name: str) -> Optional[float]:
        self.score_calls.append(name)
        return self._score

    def get_package_assessment_bundle(self, name: str) -> dict[str, Any]:
        self.bundle_calls.append(name)
        return dict(self._bundle)


def test_assessment_bundle_is_fetched_once_per_package(store: AssessmentStore) -> None:
    store.upsert_package("pkgA", 0.1)
    metrics = _CountingMetrics(0.1, {"license_ok": True, "has_tests": True})
    rules = [
        build_rule(RuleKind.ASSESSMENT, "Review", "== FALSE", "license_ok", index=1),
        build_rule(RuleKind.ASSESSMENT, "Review", "== FALSE", "has_tests", index=2),
        build_rule(RuleKind.SCORE, "Reject", "> 0.8", index=3),
        build_rule(RuleKind.SCORE, "Reject", "> 0.5", index=4),
        build_rule(RuleKind.DEFAULT, "Approve", index=5),
    ]

    result = _engine(store, metrics=metrics).assign_decision(rules, "pkgA")

    assert result == AssignmentResult("Approve", "Rule 5")
    assert metrics.bundle_calls == ["pkgA"]
    assert metrics.score_calls == ["pkgA"]


def test_bundle_not_fetched_without_assessment_rules(store: AssessmentStore) -> None:
    store.upsert_package("pkgA", 0.9)
    metrics = _CountingMetrics(0.9, {})
    rules = [build_rule(RuleKind.SCORE, "Reject", "> 0.8", index=1), build_rule(RuleKind.DEFAULT, "Approve", index=2)]

    _engine(store, metrics=metrics).assign_decision(rules, "pkgA")

    assert metrics.bundle_calls == []


def test_package_locks_come_from_a_fixed_pool(store: AssessmentStore) -> None:
    engine = _engine(store)

    locks = {id(engine._package_lock(f"pkg{i}")) for i in range(5000)}

    assert len(locks) <= LOCK_STRIPES
    assert engine._package_lock("pkgA") is engine._package_lock("pkgA")
