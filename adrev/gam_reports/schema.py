"""
Static validation of the ClickHouse DDL against the columns the pipeline writes.

Detects:
  * Tables the pipeline writes to that are missing from the DDL.
  * Columns written by the pipeline that the table does not declare.
  * ``ReplacingMergeTree(_ver)`` tables without a ``_ver`` column.
  * Non-deterministic expressions (today()/now()) inside PARTITION BY clauses.

Runs without a ClickHouse instance so it can be used in CI.
"""

from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from .accounts import PUBLISHERS_TABLE
from .alerts import ALERT_COLUMNS, ALERTS_TABLE
from .lease import LEASE_COLUMNS, LEASE_TABLE
from .sink import (
    AUDIT_QUEUE_COLUMNS,
    AUDIT_QUEUE_TABLE,
    DAILY_COLUMNS,
    DAILY_TABLE,
    DIMENSIONAL_COLUMNS,
    DIMENSIONAL_TABLE,
    FETCH_LOG_COLUMNS,
    FETCH_LOG_TABLE,
    HISTORICAL_COLUMNS,
    HISTORICAL_TABLE,
    JOB_RUN_COLUMNS,
    JOB_RUNS_TABLE,
)

DEFAULT_DDL_PATH = Path(__file__).resolve().parents[2] / "infra" / "clickhouse" / "gam_reports.sql"

WRITTEN_COLUMNS: Dict[str, Sequence[str]] = {
    DAILY_TABLE: DAILY_COLUMNS,
    DIMENSIONAL_TABLE: DIMENSIONAL_COLUMNS,
    HISTORICAL_TABLE: HISTORICAL_COLUMNS,
    FETCH_LOG_TABLE: FETCH_LOG_COLUMNS,
    AUDIT_QUEUE_TABLE: AUDIT_QUEUE_COLUMNS,
    JOB_RUNS_TABLE: JOB_RUN_COLUMNS,
    ALERTS_TABLE: ALERT_COLUMNS,
    LEASE_TABLE: LEASE_COLUMNS,
    PUBLISHERS_TABLE: ["id", "name", "network_code", "service_key_status", "currency_code"],
}

CREATE_TABLE_PATTERN = re.compile(
    r"CREATE\s+TABLE\s+IF\s+NOT\s+EXISTS\s+([\w\.]+)\s*\((.*?)\)\s*ENGINE\s*=\s*(\w+(?:\([^)]*\))?)",
    re.IGNORECASE | re.DOTALL,
)
COLUMN_PATTERN = re.compile(r"^[\s,]*([`\"]?[\w]+[`\"]?)\s+[A-Z]", re.MULTILINE | re.IGNORECASE)


def read_file(path: Path) -> str:
    for enc in ("utf-8", "utf-8-sig", "latin-1"):
        try:
            return path.read_text(encoding=enc)
        except UnicodeDecodeError:
            continue
    raise ValueError(f"Cannot read {path} with supported encodings")


def normalise(name: str) -> str:
    return name.strip().strip("`\"")


def _bare_table(name: str) -> str:
    return name.rsplit(".", 1)[-1]


def extract_tables(sql: str) -> Dict[str, Dict[str, object]]:
    """Map bare table name to its declared columns and engine."""
    tables: Dict[str, Dict[str, object]] = {}
    for match in CREATE_TABLE_PATTERN.finditer(sql):
        columns: Set[str] = set()
        for col_match in COLUMN_PATTERN.finditer(match.group(2)):
            col = normalise(col_match.group(1))
            if col and not col.startswith("--"):
                columns.add(col)
        tables[_bare_table(match.group(1))] = {"columns": columns, "engine": match.group(3)}
    return tables


def find_missing_columns(tables: Dict[str, Dict[str, object]]) -> List[str]:
    issues: List[str] = []
    for table, written in WRITTEN_COLUMNS.items():
        if table not in tables:
            issues.append(f"Table {table} is written by the pipeline but not declared")
            continue
        declared = tables[table]["columns"]
        for column in written:
            if column not in declared:  # type: ignore[operator]
                issues.append(f"Table {table} is missing column {column}")
    return issues


def find_unversioned_tables(tables: Dict[str, Dict[str, object]]) -> List[str]:
    issues: List[str] = []
    for table, info in tables.items():
        engine = str(info["engine"])
        if engine.lower().startswith("replacingmergetree") and "_ver" not in info["columns"]:  # type: ignore[operator]
            issues.append(f"Table {table} uses {engine} without a _ver column")
    return issues


def find_nondeterministic_partitions(sql: str) -> List[str]:
    issues: List[str] = []
    for pattern in (r"PARTITION\s+BY[^;]*\btoday\(\)", r"PARTITION\s+BY[^;]*\bnow\(\)"):
        for match in re.finditer(pattern, sql, flags=re.IGNORECASE | re.DOTALL):
            snippet = sql[match.start():match.start() + 120].replace("\n", " ")
            issues.append(f"Non-deterministic PARTITION BY expression: {snippet.strip()}")
    return issues


def validate(path: Path = DEFAULT_DDL_PATH) -> List[str]:
    sql = read_file(path)
    tables = extract_tables(sql)
    issues = find_missing_columns(tables)
    issues.extend(find_unversioned_tables(tables))
    issues.extend(find_nondeterministic_partitions(sql))
    return sorted(set(issues))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    path = Path(args[0]) if args else DEFAULT_DDL_PATH
    issues = validate(path)
    if issues:
        print("Schema validation found potential issues:")
        for issue in issues:
            print(f" - {issue}")
        return 1
    print("Schema validation passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
