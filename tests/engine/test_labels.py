from __future__ import annotations

import pytest

from riskdecision.engine.labels import normalize_label, risk_label


@pytest.mark.parametrize(
    "value, expected",
    [
        ("High Risk!", "cat_high_risk"),
        ("Low", "cat_low"),
        ("  Needs   Review ", "cat_needs_review_"),
        ("Block/Deny", "cat_blockdeny"),
        ("semi-trusted", "cat_semi-trusted"),
    ],
)
def test_normalize_label(value: str, expected: str) -> None:
    assert normalize_label(value) == expected


def test_risk_label_suffixes() -> None:
    assert risk_label("High Risk") == "cat_high_risk"
    assert risk_label("High Risk", "attribute") == "cat_high_risk_attr"
    assert risk_label("High Risk", "module") == "cat_high_risk_mod"


def test_risk_label_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        risk_label("High Risk", "css")  # type: ignore[arg-type]
