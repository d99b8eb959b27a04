from __future__ import annotations

import re
from typing import Literal

_WHITESPACE_RE = re.compile(r"\s+")
_INVALID_CHARS_RE = re.compile(r"[^a-zA-Z0-9_-]")

LabelKind = Literal["input", "attribute", "module"]

__all__ = ["LabelKind", "normalize_label", "risk_label"]


def normalize_label(value: str) -> str:
    """Turn a decision category name into an HTML/input friendly identifier.

    Steps:
        1. Lowercase
        2. Prefix with ``"cat "``
        3. Collapse whitespace runs to a single underscore
        4. Drop every character outside ``[a-zA-Z0-9_-]``

    ``normalize_label("High Risk!")`` returns ``"cat_high_risk"``.
    """

    text = f"cat {str(value).lower()}"
    text = _WHITESPACE_RE.sub("_", text)
    return _INVALID_CHARS_RE.sub("", text)


def risk_label(value: str, kind: LabelKind = "input") -> str:
    label = normalize_label(value)
    if kind == "input":
        return label
    if kind == "attribute":
        return f"{label}_attr"
    if kind == "module":
        return f"{label}_mod"
    raise ValueError(f"unknown label kind: {kind!r}")
