from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class Comment:
    package: str
    user_name: str
    user_role: str
    comment: str
    comment_type: str
    added_on: datetime


@dataclass(slots=True)
class PackageRecord:
    name: str
    score: Optional[float]
    decision: Optional[str]
    decision_by: Optional[str]
    decision_date: Optional[datetime]
