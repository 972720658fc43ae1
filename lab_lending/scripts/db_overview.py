#!/usr/bin/env python3
"""Database overview and integrity checks for Lab Lending."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import column, create_engine, inspect, select, table, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = ["users", "credentials", "materials", "requests"]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "users": ["UserID", "Email", "DisplayName", "Phone", "Role", "CreatedDate", "UpdatedDate"],
    "credentials": ["UserID", "Email", "PasswordHash", "PasswordSalt", "PasswordUpdatedAt"],
    "materials": [
        "MaterialID",
        "Name",
        "Category",
        "Quantity",
        "Available",
        "ImageUrl",
        "Version",
        "CreatedDate",
        "UpdatedDate",
    ],
    "requests": [
        "RequestID",
        "UserID",
        "MaterialID",
        "StartDate",
        "EndDate",
        "Status",
        "AdminNotes",
        "CreatedDate",
        "UpdatedDate",
    ],
}

EXPECTED_INDEXES = {"requests": ["ix_requests_user_created", "ix_requests_status_created"]}

STATUSES = ("pending", "approved", "rechazado", "entregado", "devuelto")


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _run_existence_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    inspector = inspect(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _run_index_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    # A missing index is not fatal: request listing falls back to a full scan.
    results: list[CheckResult] = []
    inspector = inspect(engine)
    for table, expected in EXPECTED_INDEXES.items():
        actual = {index["name"] for index in inspector.get_indexes(table)} if table in tables else set()
        for name in expected:
            results.append(
                CheckResult(f"index:{name}", name in actual, "present" if name in actual else "missing (scan fallback)")
            )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "materials" in tables:
        checks.append(
            _count_check(
                engine,
                "materials:available_above_quantity",
                "SELECT COUNT(*) FROM materials WHERE Available > Quantity",
            )
        )
        checks.append(
            _count_check(
                engine,
                "materials:negative_counts",
                "SELECT COUNT(*) FROM materials WHERE Available < 0 OR Quantity < 0",
            )
        )

    if "requests" in tables:
        placeholders = ", ".join(f"'{status}'" for status in STATUSES)
        checks.append(
            _count_check(
                engine,
                "requests:unknown_status",
                f"SELECT COUNT(*) FROM requests WHERE Status NOT IN ({placeholders})",
            )
        )
        checks.append(
            _count_check(
                engine,
                "requests:end_not_after_start",
                "SELECT COUNT(*) FROM requests WHERE EndDate <= StartDate",
            )
        )

    if "requests" in tables and "materials" in tables:
        checks.append(
            _count_check(
                engine,
                "requests:orphan_materialid",
                """
                SELECT COUNT(*)
                FROM requests r
                LEFT JOIN materials m ON m.MaterialID = r.MaterialID
                WHERE m.MaterialID IS NULL
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_breakdown(engine: Engine, tables: set[str]) -> None:
    _print_section("Requests by Status")
    if "requests" not in tables:
        print("requests: missing")
        return
    for status, count in _rows(engine, "SELECT Status, COUNT(*) FROM requests GROUP BY Status ORDER BY Status"):
        print(f"{status}: {int(count or 0)}")


def _recent_requests_statement(sample_size: int):
    requests = table(
        "requests",
        column("RequestID"),
        column("UserID"),
        column("MaterialID"),
        column("Status"),
        column("CreatedDate"),
    )
    return select(requests).order_by(requests.c.CreatedDate.desc()).limit(sample_size)


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "requests" in tables:
        with engine.connect() as conn:
            rows = conn.execute(_recent_requests_statement(sample_size)).all()
        print("requests (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Lab Lending DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LAB_LENDING_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LAB_LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        tables = _table_names(engine)
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(engine, tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_results("Index Checks", _run_index_checks(engine, tables))
    _print_results("Integrity Checks", _run_integrity_checks(engine, tables))
    _print_row_counts(engine, tables)
    _print_status_breakdown(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
