from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from riskdecision.engine.types import DecisionCategory
from riskdecision.store import AssessmentStore


@pytest.fixture
def categories() -> list[DecisionCategory]:
    return [
        DecisionCategory(name="Approve", color="#06B756", lower_limit=0.0, upper_limit=0.3),
        DecisionCategory(name="Review", color="#A99D04", lower_limit=0.3, upper_limit=0.7),
        DecisionCategory(name="Reject", color="#A63E24", lower_limit=0.7, upper_limit=1.0),
    ]


@pytest.fixture
def store(tmp_path: Path, categories: list[DecisionCategory]) -> AssessmentStore:
    """Assessment database seeded with the Approve/Review/Reject categories."""

    assessment_store = AssessmentStore(tmp_path / "assessment.sqlite")
    assessment_store.replace_categories(categories)
    return assessment_store
