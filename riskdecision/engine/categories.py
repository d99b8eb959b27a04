from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Optional

from .labels import risk_label
from .types import DecisionCategory

__all__ = [
    "DecisionCategoryRegistry",
    "contrast_text_color",
    "load_categories",
    "normalize_color",
    "parse_hex",
]

WHITE = "#ffffff"
BLACK = "#000000"
_LUMINANCE_THRESHOLD = 130
_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{6})$")


def normalize_color(value: str) -> str:
    """Return ``value`` as ``#rrggbb`` or raise ValueError."""

    match = _HEX_RE.match(str(value).strip())
    if match is None:
        raise ValueError(f"invalid hex color: {value!r}")
    return f"#{match.group(1).lower()}"


def parse_hex(value: str) -> tuple[int, int, int]:
    digits = normalize_color(value)[1:]
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def contrast_text_color(value: str) -> str:
    """White text on dark backgrounds, black text otherwise.

    Uses the perceived luminance ``(299R + 587G + 114B) / 1000`` with white
    returned up to and including a luminance of 130.
    """

    red, green, blue = parse_hex(value)
    luminance = (299 * red + 587 * green + 114 * blue) / 1000
    return WHITE if luminance <= _LUMINANCE_THRESHOLD else BLACK


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    numeric = float(value)
    if numeric != numeric:  # NaN from an empty numeric column
        return None
    return numeric


def load_categories(source: Any) -> list[DecisionCategory]:
    """Build categories from table rows or from a store exposing the table."""

    if hasattr(source, "read_decision_category_table"):
        rows: Iterable[Mapping[str, Any]] = source.read_decision_category_table()
    else:
        rows = source
    categories: list[DecisionCategory] = []
    for row in rows:
        name = row.get("decision", row.get("name"))
        if name is None:
            raise ValueError(f"decision category row without a name: {dict(row)!r}")
        raw_id = row.get("id")
        categories.append(
            DecisionCategory(
                name=str(name),
                color=normalize_color(row.get("color", "")),
                lower_limit=_optional_float(row.get("lower_limit")),
                upper_limit=_optional_float(row.get("upper_limit")),
                id=int(raw_id) if raw_id is not None else None,
            )
        )
    return categories


class DecisionCategoryRegistry:
    def __init__(self, categories: Iterable[DecisionCategory]) -> None:
        self._categories: dict[str, DecisionCategory] = {}
        for category in categories:
            if category.name in self._categories:
                raise ValueError(f"duplicate decision category: {category.name}")
            self._categories[category.name] = category

    @classmethod
    def load(cls, source: Any) -> "DecisionCategoryRegistry":
        return cls(load_categories(source))

    def __contains__(self, name: object) -> bool:
        return name in self._categories

    def __len__(self) -> int:
        return len(self._categories)

    def __iter__(self):
        return iter(self._categories.values())

    @property
    def names(self) -> list[str]:
        return list(self._categories)

    def get(self, name: str) -> Optional[DecisionCategory]:
        return self._categories.get(name)

    def color_for(self, name: str) -> str:
        return self._categories[name].color

    def colors(self) -> dict[str, str]:
        return {name: category.color for name, category in self._categories.items()}

    def text_color_for(self, name: str) -> str:
        return contrast_text_color(self.color_for(name))

    def labels(self, name: str) -> dict[str, str]:
        return {kind: risk_label(name, kind) for kind in ("input", "attribute", "module")}

    def score_ranges(self) -> dict[str, tuple[Optional[float], Optional[float]]]:
        return {
            name: (category.lower_limit, category.upper_limit)
            for name, category in self._categories.items()
            if category.has_range
        }

    def category_for_score(self, score: float) -> Optional[DecisionCategory]:
        """First category whose ``[lower, upper)`` range holds ``score``.

        The category owning the largest upper limit also accepts that limit,
        so a score of exactly 1.0 lands in a ``[0.7, 1.0]`` bucket.
        """

        uppers = [c.upper_limit for c in self._categories.values() if c.upper_limit is not None]
        top = max(uppers) if uppers else None
        for category in self._categories.values():
            if not category.has_range:
                continue
            lower, upper = category.lower_limit, category.upper_limit
            if lower is not None and score < lower:
                continue
            if upper is not None and score >= upper and not (upper == top and score == upper):
                continue
            return category
        return None

    def overlapping_ranges(self) -> list[tuple[str, str]]:
        ranged = [
            (name, lower if lower is not None else float("-inf"), upper if upper is not None else float("inf"))
            for name, (lower, upper) in self.score_ranges().items()
        ]
        overlaps: list[tuple[str, str]] = []
        for index, (name_a, low_a, high_a) in enumerate(ranged):
            for name_b, low_b, high_b in ranged[index + 1 :]:
                if low_a < high_b and low_b < high_a:
                    overlaps.append((name_a, name_b))
        return overlaps
