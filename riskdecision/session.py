from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from .engine.loader import build_rule, rule_key
from .engine.types import RuleDefinition, RuleKind

logger = logging.getLogger(__name__)

RemoveCallback = Callable[[str], None]

_RULE_NUMBER_RE = re.compile(r"^rule_(\d+)$")


class _Removed:
    __slots__ = ()

    def __repr__(self) -> str:
        return "REMOVED"


REMOVED = _Removed()


class RuleEditingSession:
    """Ordered, mutable set of rules being edited interactively.

    Entries are keyed by the same keys the loader assigns. Removing a rule
    leaves a tombstone, drops the key from the order, releases the input
    state stored for the key and notifies the callbacks registered for it.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RuleDefinition | _Removed] = {}
        self._order: list[str] = []
        self._inputs: dict[str, dict[str, Any]] = {}
        self._callbacks: dict[str, list[RemoveCallback]] = {}

    @classmethod
    def from_rules(cls, rules: Iterable[RuleDefinition]) -> "RuleEditingSession":
        session = cls()
        for index, rule in enumerate(rules, start=1):
            session.insert(rule.key or rule_key(rule, index), rule)
        return session

    # --- queries ----------------------------------------------------------

    def __contains__(self, key: object) -> bool:
        return key in self._order

    def __len__(self) -> int:
        return len(self._order)

    @property
    def keys(self) -> list[str]:
        return list(self._order)

    def get(self, key: str) -> Optional[RuleDefinition]:
        entry = self._entries.get(key)
        return entry if isinstance(entry, RuleDefinition) else None

    def is_removed(self, key: str) -> bool:
        return self._entries.get(key) is REMOVED

    def render_items(self) -> Iterator[tuple[str, RuleDefinition]]:
        for key in self._order:
            entry = self._entries[key]
            if isinstance(entry, RuleDefinition):
                yield key, entry

    def rules(self) -> list[RuleDefinition]:
        return [rule for _, rule in self.render_items()]

    def next_rule_key(self) -> str:
        numbers = [
            int(match.group(1))
            for match in (_RULE_NUMBER_RE.match(key) for key in self._entries)
            if match is not None
        ]
        return f"rule_{max(numbers, default=0) + 1}"

    # --- mutations --------------------------------------------------------

    def insert(self, key: str, rule: RuleDefinition) -> None:
        if key in self._order:
            self._entries[key] = rule
            return
        self._entries[key] = rule
        self._order.append(key)

    def add(self, rule: RuleDefinition) -> str:
        if rule.kind == RuleKind.ASSESSMENT or RuleKind.parse(rule.kind) is None:
            key = self.next_rule_key()
        else:
            key = rule_key(rule, len(self._order) + 1)
        rule.key = key
        self.insert(key, rule)
        return key

    def mark_removed(self, key: str) -> bool:
        """Tombstone ``key`` and release its state; returns False if nothing changed."""

        if key not in self._order:
            return False
        self._entries[key] = REMOVED
        self._order.remove(key)
        self._inputs.pop(key, None)
        for callback in self._callbacks.pop(key, []):
            try:
                callback(key)
            except Exception:  # noqa: BLE001
                logger.exception("Removal callback for %s failed", key)
        return True

    def reorder(self, new_order: Sequence[str]) -> None:
        requested = [key for key in new_order if not self.is_removed(key)]
        if len(set(requested)) != len(requested) or set(requested) != set(self._order):
            raise ValueError(f"reorder expects the live keys {sorted(self._order)}, got {list(new_order)}")
        self._order = list(requested)

    # --- input state and observers ----------------------------------------

    def set_input(self, key: str, name: str, value: Any) -> None:
        if key not in self._order:
            raise KeyError(key)
        self._inputs.setdefault(key, {})[name] = value

    def inputs_for(self, key: str) -> dict[str, Any]:
        return dict(self._inputs.get(key, {}))

    def on_remove(self, key: str, callback: RemoveCallback) -> None:
        if key not in self._order:
            raise KeyError(key)
        self._callbacks.setdefault(key, []).append(callback)

    # --- persistence ------------------------------------------------------

    def to_rules(self) -> list[RuleDefinition]:
        """Live rules in order, re-keyed and recompiled for persisting."""

        rebuilt: list[RuleDefinition] = []
        for index, rule in enumerate(self.rules(), start=1):
            rebuilt.append(build_rule(rule.kind, rule.decision, rule.condition, rule.metric, index=index))
        return rebuilt
