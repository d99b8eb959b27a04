from __future__ import annotations

import logging

import pytest

from riskdecision.engine.loader import build_rule, load_rules
from riskdecision.engine.types import RuleKind
from riskdecision.session import RuleEditingSession


def _session() -> RuleEditingSession:
    return RuleEditingSession.from_rules(
        load_rules(
            [
                {"rule_type": "overall_score", "decision": "Reject", "condition": "> 0.8"},
                {"rule_type": "assessment", "metric": "license_ok", "condition": "== FALSE", "decision": "Review"},
                {"rule_type": "assessment", "metric": "has_tests", "condition": "== FALSE", "decision": "Review"},
                {"rule_type": "else", "decision": "Approve"},
            ]
        )
    )


def test_from_rules_keeps_loader_keys() -> None:
    session = _session()

    assert session.keys == ["cat_reject_mod", "rule_2", "rule_3", "rule_else"]
    assert len(session) == 4
    assert session.get("rule_2").metric == "license_ok"


def test_mark_removed_tombstones_and_releases_state() -> None:
    session = _session()
    removed: list[str] = []
    session.set_input("rule_2", "condition", "== FALSE")
    session.on_remove("rule_2", removed.append)

    assert session.mark_removed("rule_2") is True

    assert "rule_2" not in session
    assert session.is_removed("rule_2")
    assert session.get("rule_2") is None
    assert session.inputs_for("rule_2") == {}
    assert removed == ["rule_2"]
    assert [key for key, _ in session.render_items()] == ["cat_reject_mod", "rule_3", "rule_else"]


def test_mark_removed_is_idempotent() -> None:
    session = _session()
    removed: list[str] = []
    session.on_remove("rule_3", removed.append)

    assert session.mark_removed("rule_3") is True
    assert session.mark_removed("rule_3") is False
    assert session.mark_removed("rule_99") is False
    assert removed == ["rule_3"]


def test_failing_remove_callback_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR)
    session = _session()
    calls: list[str] = []

    def _broken(key: str) -> None:
        raise RuntimeError("observer gone")

    session.on_remove("rule_2", _broken)
    session.on_remove("rule_2", calls.append)

    assert session.mark_removed("rule_2") is True
    assert calls == ["rule_2"]
    assert any("Removal callback for rule_2 failed" in r.getMessage() for r in caplog.records)


def test_removed_key_rejects_new_state() -> None:
    session = _session()
    session.mark_removed("rule_2")

    with pytest.raises(KeyError):
        session.set_input("rule_2", "decision", "Reject")
    with pytest.raises(KeyError):
        session.on_remove("rule_2", lambda key: None)


def test_reorder_ignores_tombstones() -> None:
    session = _session()
    session.mark_removed("rule_2")

    session.reorder(["rule_else", "rule_2", "rule_3", "cat_reject_mod"])

    assert session.keys == ["rule_else", "rule_3", "cat_reject_mod"]
    with pytest.raises(ValueError):
        session.reorder(["rule_else", "rule_3"])


def test_new_rule_never_reuses_removed_key() -> None:
    session = _session()
    session.mark_removed("rule_3")

    key = session.add(build_rule(RuleKind.ASSESSMENT, "Review", "is_missing", "maintainer"))

    assert key == "rule_4"
    assert session.keys[-1] == "rule_4"


def test_to_rules_renumbers_live_rules() -> None:
    session = _session()
    session.mark_removed("rule_2")

    rules = session.to_rules()

    assert [rule.key for rule in rules] == ["cat_reject_mod", "rule_2", "rule_else"]
    assert rules[1].metric == "has_tests"
    assert all(rule.predicate is None or rule.predicate.ok for rule in rules)


def test_insert_revives_tombstoned_key_at_end() -> None:
    session = _session()
    session.mark_removed("rule_2")

    session.insert("rule_2", build_rule(RuleKind.ASSESSMENT, "Reject", "== FALSE", "license_ok", index=2))

    assert session.keys == ["cat_reject_mod", "rule_3", "rule_else", "rule_2"]
    assert not session.is_removed("rule_2")
    assert session.get("rule_2").decision == "Reject"
