from __future__ import annotations

from .assessment_store import AssessmentStore
from .models import Comment, PackageRecord

__all__ = [
    "AssessmentStore",
    "Comment",
    "PackageRecord",
]
