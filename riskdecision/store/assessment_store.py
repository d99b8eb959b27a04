from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from ..engine.dsl_errors import ConfigurationMismatch
from ..engine.types import DecisionCategory, PackageDecisionState, RuleDefinition
from .models import Comment, PackageRecord

_SCHEMA = """
CREATE TABLE IF NOT EXISTS decision_categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    decision TEXT NOT NULL UNIQUE,
    color TEXT NOT NULL,
    lower_limit REAL,
    upper_limit REAL
);
CREATE TABLE IF NOT EXISTS package (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    score REAL,
    decision_id INTEGER REFERENCES decision_categories(id),
    decision_by TEXT,
    decision_date TEXT
);
CREATE TABLE IF NOT EXISTS metric (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS package_metrics (
    package_id INTEGER NOT NULL REFERENCES package(id),
    metric_id INTEGER NOT NULL REFERENCES metric(id),
    value TEXT,
    PRIMARY KEY (package_id, metric_id)
);
CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_type TEXT NOT NULL,
    metric_id INTEGER REFERENCES metric(id),
    condition TEXT,
    decision_id INTEGER REFERENCES decision_categories(id)
);
CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    comment_id TEXT NOT NULL,
    user_name TEXT NOT NULL,
    user_role TEXT NOT NULL,
    comment TEXT NOT NULL,
    comment_type TEXT NOT NULL,
    added_on TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_comments_package ON comments(comment_id);
"""


def _to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class AssessmentStore:
    """Assessment database: packages, metrics, decisions, rules and comments."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._configured = False
        self._initialize()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=60.0)
        conn.row_factory = sqlite3.Row
        try:
            if not self._configured:
                self._configure(conn)
            conn.execute("PRAGMA foreign_keys=ON")
            with conn:
                yield conn
        finally:
            conn.close()

    def _configure(self, conn: sqlite3.Connection) -> None:
        cursor = conn.execute("PRAGMA journal_mode=WAL")
        cursor.fetchone()
        conn.execute("PRAGMA synchronous=NORMAL")
        self._configured = True

    def _initialize(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    # --- packages and metrics -------------------------------------------

    def upsert_package(self, name: str, score: Optional[float] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO package (name, score) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET score=excluded.score
                """,
                (name, score),
            )

    def set_metric(self, package: str, metric: str, value: Any) -> None:
        payload = json.dumps(value)
        with self._connect() as conn:
            package_id = self._package_id(conn, package, create=True)
            conn.execute("INSERT OR IGNORE INTO metric (name) VALUES (?)", (metric,))
            metric_id = conn.execute("SELECT id FROM metric WHERE name=?", (metric,)).fetchone()[0]
            conn.execute(
                """
                INSERT INTO package_metrics (package_id, metric_id, value) VALUES (?, ?, ?)
                ON CONFLICT(package_id, metric_id) DO UPDATE SET value=excluded.value
                """,
                (package_id, metric_id, payload),
            )

    def get_package_score(self, name: str) -> Optional[float]:
        with self._connect() as conn:
            row = conn.execute("SELECT score FROM package WHERE name=?", (name,)).fetchone()
        return row["score"] if row is not None else None

    def get_package_assessment_bundle(self, name: str) -> dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.name AS metric, pm.value AS value
                FROM package_metrics pm
                JOIN package p ON pm.package_id = p.id
                JOIN metric m ON pm.metric_id = m.id
                WHERE p.name = ?
                """,
                (name,),
            ).fetchall()
        return {row["metric"]: json.loads(row["value"]) if row["value"] is not None else None for row in rows}

    def list_packages(self, *, undecided_only: bool = False) -> list[PackageRecord]:
        query = """
            SELECT p.name, p.score, d.decision, p.decision_by, p.decision_date
            FROM package p LEFT JOIN decision_categories d ON p.decision_id = d.id
        """
        if undecided_only:
            query += " WHERE p.decision_id IS NULL"
        query += " ORDER BY p.name"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            PackageRecord(
                name=row["name"],
                score=row["score"],
                decision=row["decision"],
                decision_by=row["decision_by"],
                decision_date=_from_iso(row["decision_date"]),
            )
            for row in rows
        ]

    # --- decisions ------------------------------------------------------

    def read_decision_state(self, name: str) -> Optional[PackageDecisionState]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT p.name, p.decision_id, d.decision, p.decision_by, p.decision_date
                FROM package p LEFT JOIN decision_categories d ON p.decision_id = d.id
                WHERE p.name = ?
                """,
                (name,),
            ).fetchone()
        if row is None:
            return None
        return PackageDecisionState(
            package_name=row["name"],
            decision_id=row["decision_id"],
            decision=row["decision"],
            decision_by=row["decision_by"],
            decision_date=_from_iso(row["decision_date"]),
        )

    def write_decision(
        self,
        name: str,
        decision: Optional[str],
        decision_by: str,
        decision_date: datetime,
        *,
        only_if_undecided: bool = True,
    ) -> bool:
        """Set the decision of ``name``; returns False when nothing changed.

        With ``only_if_undecided`` a package that already carries a decision
        is left untouched.
        """

        with self._connect() as conn:
            decision_id = None
            if decision is not None:
                decision_id = self._decision_id(conn, decision)
            query = "UPDATE package SET decision_id=?, decision_by=?, decision_date=? WHERE name=?"
            if only_if_undecided:
                query += " AND decision_id IS NULL"
            cursor = conn.execute(query, (decision_id, decision_by, _to_iso(decision_date), name))
            return cursor.rowcount == 1

    def append_comment(
        self,
        package: str,
        user_name: str,
        user_role: str,
        comment: str,
        comment_type: str,
        added_on: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO comments (comment_id, user_name, user_role, comment, comment_type, added_on)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (package, user_name, user_role, comment, comment_type, _to_iso(added_on)),
            )

    def list_comments(self, package: str) -> list[Comment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM comments WHERE comment_id=? ORDER BY id",
                (package,),
            ).fetchall()
        return [
            Comment(
                package=row["comment_id"],
                user_name=row["user_name"],
                user_role=row["user_role"],
                comment=row["comment"],
                comment_type=row["comment_type"],
                added_on=datetime.fromisoformat(row["added_on"]),
            )
            for row in rows
        ]

    # --- configuration tables --------------------------------------------

    def read_decision_category_table(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, decision, color, lower_limit, upper_limit FROM decision_categories ORDER BY id"
            ).fetchall()
        return [dict(row) for row in rows]

    def read_rule_table(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.rule_type AS rule_type, m.name AS metric, r.condition AS condition, d.decision AS decision
                FROM rules r
                LEFT JOIN metric m ON r.metric_id = m.id
                LEFT JOIN decision_categories d ON r.decision_id = d.id
                ORDER BY r.id
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def replace_categories(self, categories: Iterable[DecisionCategory]) -> None:
        """Replace the category table; clears the rules and package decisions referencing it."""

        with self._connect() as conn:
            conn.execute("DELETE FROM rules")
            conn.execute("UPDATE package SET decision_id=NULL")
            conn.execute("DELETE FROM decision_categories")
            conn.executemany(
                "INSERT INTO decision_categories (decision, color, lower_limit, upper_limit) VALUES (?, ?, ?, ?)",
                [(c.name, c.color, c.lower_limit, c.upper_limit) for c in categories],
            )

    def replace_rules(self, rules: Iterable[RuleDefinition]) -> None:
        """Persist ``rules`` in order, replacing the current rule table."""

        with self._connect() as conn:
            conn.execute("DELETE FROM rules")
            for rule in rules:
                metric_id = None
                if rule.metric:
                    conn.execute("INSERT OR IGNORE INTO metric (name) VALUES (?)", (rule.metric,))
                    metric_id = conn.execute("SELECT id FROM metric WHERE name=?", (rule.metric,)).fetchone()[0]
                conn.execute(
                    "INSERT INTO rules (rule_type, metric_id, condition, decision_id) VALUES (?, ?, ?, ?)",
                    (rule.kind, metric_id, rule.condition or None, self._decision_id(conn, rule.decision)),
                )

    # --- helpers ----------------------------------------------------------

    @staticmethod
    def _decision_id(conn: sqlite3.Connection, decision: str) -> int:
        row = conn.execute("SELECT id FROM decision_categories WHERE decision=?", (decision,)).fetchone()
        if row is None:
            raise ConfigurationMismatch(f"Decision '{decision}' is not a configured decision category")
        return int(row["id"])

    @staticmethod
    def _package_id(conn: sqlite3.Connection, name: str, *, create: bool = False) -> Optional[int]:
        if create:
            conn.execute("INSERT OR IGNORE INTO package (name) VALUES (?)", (name,))
        row = conn.execute("SELECT id FROM package WHERE name=?", (name,)).fetchone()
        return int(row["id"]) if row is not None else None
