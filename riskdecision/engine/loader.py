from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import yaml

from .categories import DecisionCategoryRegistry, normalize_color
from .dsl import compile_condition
from .dsl_errors import ConfigurationMismatch
from .labels import risk_label
from .types import (
    DecisionCategory,
    DecisionConfig,
    DslMode,
    DslPolicy,
    LoadResult,
    RuleDefinition,
    RuleKind,
    ValidationIssue,
)

__all__ = [
    "apply_config",
    "build_rule",
    "load_decision_config",
    "load_rules",
    "rule_key",
]

logger = logging.getLogger(__name__)

_ALLOWED_KEYS = {"version", "dsl_mode", "decisions", "rules"}
_SUPPORTED_VERSION = 1


def rule_key(rule: RuleDefinition, index: int) -> str:
    """Key used for display and storage of the rule at 1-based ``index``."""

    if rule.kind == RuleKind.SCORE:
        return risk_label(rule.decision, "module")
    if rule.kind == RuleKind.DEFAULT:
        return "rule_else"
    return f"rule_{index}"


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_rule(
    kind: Any,
    decision: Any,
    condition: Any = None,
    metric: Any = None,
    *,
    index: int = 1,
    policy: DslPolicy | None = None,
) -> RuleDefinition:
    """Create a rule and compile its condition; compile failures stay inert."""

    parsed = RuleKind.parse(kind)
    rule = RuleDefinition(
        kind=parsed.value if parsed else str(kind),
        decision=str(decision) if decision is not None else "",
        condition=_clean_text(condition) or "",
        metric=_clean_text(metric),
    )
    if parsed is not RuleKind.DEFAULT:
        rule.predicate = compile_condition(rule.condition)
        if not rule.predicate.ok and policy is not None:
            policy.warn_once(
                f"Condition `{rule.condition}` of rule {index} ({rule.kind}) did not compile "
                f"and will never match: {rule.predicate.error}",
                key=f"rule:{index}:{rule.condition}:compile",
            )
    rule.key = rule_key(rule, index)
    return rule


def load_rules(source: Any, *, policy: DslPolicy | None = None) -> list[RuleDefinition]:
    """Load persisted rules in order.

    ``source`` is an iterable of rows (``rule_type``/``type``, ``metric``,
    ``condition``, ``decision``) or an object exposing ``read_rule_table()``.
    """

    if hasattr(source, "read_rule_table"):
        rows: Iterable[Mapping[str, Any]] = source.read_rule_table()
    else:
        rows = source
    effective_policy = policy or DslPolicy()
    rules: list[RuleDefinition] = []
    for index, row in enumerate(rows, start=1):
        rules.append(
            build_rule(
                row.get("rule_type", row.get("type")),
                row.get("decision"),
                row.get("condition"),
                row.get("metric"),
                index=index,
                policy=effective_policy,
            )
        )
    return rules


def _record_issue(
    issues: list[ValidationIssue],
    counts: dict[str, int],
    level: str,
    code: str,
    where: str,
    msg: str,
    hint: str | None = None,
) -> None:
    issues.append(ValidationIssue(level=level, code=code, where=where, msg=msg, hint=hint))  # type: ignore[arg-type]
    counts["errors" if level == "error" else "warnings"] += 1


def _parse_limit(value: Any) -> tuple[Optional[float], bool]:
    if value is None:
        return None, True
    if isinstance(value, bool):
        return None, False
    try:
        return float(value), True
    except (TypeError, ValueError):
        return None, False


def _load_categories(
    raw: Any,
    *,
    issues: list[ValidationIssue],
    counts: dict[str, int],
) -> tuple[list[DecisionCategory], bool]:
    invalid = False
    categories: list[DecisionCategory] = []
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)) or not raw:
        _record_issue(issues, counts, "error", "C-V001", "decisions", "decisions must be a non-empty list")
        return categories, True

    seen: set[str] = set()
    for index, entry in enumerate(raw):
        where = f"decisions[{index}]"
        if not isinstance(entry, Mapping):
            _record_issue(issues, counts, "error", "C-D001", where, "Decision entry must be a mapping")
            invalid = True
            continue
        name = _clean_text(entry.get("name"))
        if not name:
            _record_issue(issues, counts, "error", "C-D001", where, "Decision requires a name")
            invalid = True
            continue
        if name in seen:
            _record_issue(issues, counts, "error", "C-D001", where, f"Duplicate decision: {name}")
            invalid = True
            continue
        seen.add(name)
        try:
            color = normalize_color(entry.get("color", ""))
        except ValueError:
            _record_issue(
                issues,
                counts,
                "error",
                "C-D001",
                f"{where}.color",
                f"Invalid color {entry.get('color')!r} for '{name}'",
                "Use six hex digits, e.g. \"#06B756\"",
            )
            invalid = True
            continue
        lower, lower_ok = _parse_limit(entry.get("lower_limit"))
        upper, upper_ok = _parse_limit(entry.get("upper_limit"))
        if not (lower_ok and upper_ok) or (lower is not None and upper is not None and lower > upper):
            _record_issue(issues, counts, "error", "C-D001", where, f"Invalid score limits for '{name}'")
            invalid = True
            continue
        categories.append(DecisionCategory(name=name, color=color, lower_limit=lower, upper_limit=upper))

    registry = DecisionCategoryRegistry(categories)
    for first, second in registry.overlapping_ranges():
        _record_issue(
            issues,
            counts,
            "warning",
            "C-D002",
            "decisions",
            f"Score ranges of '{first}' and '{second}' overlap",
            "The first matching category wins when mapping a score to a category",
        )
    counts["decisions"] = len(categories)
    return categories, invalid


def load_decision_config(
    path: str | Path,
    *,
    override_mode: DslMode | None = None,
    raise_on_error: bool = False,
) -> LoadResult:
    """Read and validate a decision configuration file."""

    counts = {"decisions": 0, "rules": 0, "inert_rules": 0, "errors": 0, "warnings": 0}
    issues: list[ValidationIssue] = []
    fatal = False
    invalid = False
    mode: DslMode = override_mode or "warn"

    def _finish(status: str, config: DecisionConfig | None) -> LoadResult:
        result = LoadResult(status=status, mode=mode, config=config, issues=issues, counts=counts)  # type: ignore[arg-type]
        if raise_on_error and status == "error":
            summary = "; ".join(f"[{i.code}] {i.where}: {i.msg}" for i in issues if i.level == "error")
            raise ConfigurationMismatch(f"Invalid decision configuration {path}: {summary}")
        return result

    try:
        with Path(path).open("r", encoding="utf-8") as fp:
            raw_data = yaml.safe_load(fp) or {}
    except OSError as exc:
        _record_issue(issues, counts, "error", "C-IO", "top-level", f"Failed to read configuration: {exc}")
        return _finish("error", None)
    except yaml.YAMLError as exc:
        _record_issue(issues, counts, "error", "C-YAML", "top-level", f"Failed to parse YAML: {exc}")
        return _finish("error", None)

    if not isinstance(raw_data, Mapping):
        _record_issue(issues, counts, "error", "C-V001", "top-level", "Configuration must be a mapping")
        return _finish("error", None)

    yaml_mode = str(raw_data.get("dsl_mode", "")).strip().lower() or None
    if yaml_mode not in {"warn", "strict"}:
        yaml_mode = None
    mode = override_mode or yaml_mode or "warn"  # type: ignore[assignment]
    strict = mode == "strict"

    unknown_keys = sorted(str(key) for key in set(raw_data.keys()) - _ALLOWED_KEYS)
    if unknown_keys:
        level = "error" if strict else "warning"
        _record_issue(
            issues,
            counts,
            level,
            "C-K001",
            "top-level",
            f"Unknown keys detected: {', '.join(unknown_keys)}",
            "They are ignored. Remove them or move them under decisions/rules.",
        )

    if raw_data.get("version", _SUPPORTED_VERSION) != _SUPPORTED_VERSION:
        _record_issue(issues, counts, "error", "C-V001", "version", f"version must be {_SUPPORTED_VERSION}")
        fatal = True

    categories, categories_invalid = _load_categories(raw_data.get("decisions"), issues=issues, counts=counts)
    invalid = invalid or categories_invalid
    if not categories:
        fatal = True
    known_decisions = {category.name for category in categories}

    rules_raw = raw_data.get("rules")
    if rules_raw is None:
        rules_raw = []
    if not isinstance(rules_raw, Sequence) or isinstance(rules_raw, (str, bytes)):
        _record_issue(issues, counts, "error", "C-V001", "rules", "rules must be a list")
        return _finish("error", None)

    rules: list[RuleDefinition] = []
    default_positions: list[int] = []
    for index, entry in enumerate(rules_raw, start=1):
        where = f"rules[{index - 1}]"
        if not isinstance(entry, Mapping):
            _record_issue(issues, counts, "error", "C-R001", where, "Rule entry must be a mapping")
            invalid = True
            continue
        kind = RuleKind.parse(entry.get("type"))
        if kind is None:
            _record_issue(
                issues,
                counts,
                "error",
                "C-R001",
                f"{where}.type",
                f"Unknown rule type: {entry.get('type')!r}",
                "Use one of: overall_score, assessment, else",
            )
            invalid = True
            continue
        decision = _clean_text(entry.get("decision"))
        if not decision:
            _record_issue(issues, counts, "error", "C-R001", f"{where}.decision", "Rule requires a decision")
            invalid = True
            continue
        if decision not in known_decisions:
            _record_issue(
                issues,
                counts,
                "error",
                "C-R002",
                f"{where}.decision",
                f"Decision '{decision}' is not a configured decision category",
            )
            fatal = True
            continue
        if kind is RuleKind.ASSESSMENT and not _clean_text(entry.get("metric")):
            _record_issue(issues, counts, "error", "C-R001", f"{where}.metric", "Assessment rules require a metric")
            invalid = True
            continue
        if kind is not RuleKind.DEFAULT and not _clean_text(entry.get("condition")):
            _record_issue(issues, counts, "error", "C-R001", f"{where}.condition", "Rule requires a condition")
            invalid = True
            continue

        rule = build_rule(kind, decision, entry.get("condition"), entry.get("metric"), index=len(rules) + 1)
        if rule.predicate is not None and not rule.predicate.ok:
            _record_issue(
                issues,
                counts,
                "error" if strict else "warning",
                "C-R003",
                f"{where}.condition",
                f"Condition `{rule.condition}` does not compile: {rule.predicate.error}",
                "The rule is kept but will never match",
            )
            counts["inert_rules"] += 1
        if kind is RuleKind.DEFAULT:
            default_positions.append(len(rules))
        rules.append(rule)

    if len(default_positions) > 1 or (default_positions and default_positions[-1] != len(rules) - 1):
        _record_issue(
            issues,
            counts,
            "error" if strict else "warning",
            "C-R004",
            "rules",
            "The default ('else') rule should appear once, as the last rule",
            "Rules after the first default rule are never reached",
        )
    counts["rules"] = len(rules)

    if fatal or (strict and counts["errors"] > 0):
        return _finish("error", None)

    status = "invalid" if invalid else "ok"
    return _finish(status, DecisionConfig(categories=categories, rules=rules, raw=dict(raw_data)))


def apply_config(store: Any, config: DecisionConfig) -> bool:
    """Seed an empty store with ``config``; verify categories otherwise.

    Returns True when the store was seeded. Raises ConfigurationMismatch when
    the persisted categories differ from the configured ones.
    """

    persisted = [row["decision"] for row in store.read_decision_category_table()]
    configured = [category.name for category in config.categories]
    if not persisted:
        store.replace_categories(config.categories)
        store.replace_rules(config.rules)
        logger.info("Seeded %d decision categories and %d rules", len(configured), len(config.rules))
        return True
    if persisted != configured:
        raise ConfigurationMismatch(
            "The decision categories in the configuration file do not match those in the assessment database."
        )
    return False
