"""Timed exploratory queries over the exported SCDM Parquet files via DuckDB."""

import argparse
import duckdb
import os
import string
import sys
import time
from pathlib import Path

import pandas as pd

from convert_to_parquet import OUTPUT_DIR, TABLES, sql_path

# Each query names its tables as {placeholders}; they resolve to read_parquet() calls.
QUERIES = {
    "Row count per table": "\nUNION ALL\n".join(
        f"SELECT '{t}' AS table_name, count(*)::BIGINT AS row_count FROM {{{t}}}" for t in TABLES
    ),
    "Enrollment by coverage type": """
        SELECT
            MedCov AS medical_coverage,
            DrugCov AS drug_coverage,
            count(*)::BIGINT AS enrollment_spans,
            count(DISTINCT PatID)::BIGINT AS patients
        FROM {enrollment}
        GROUP BY MedCov, DrugCov
        ORDER BY MedCov, DrugCov
    """,
    "Top 20 diagnosis codes": """
        SELECT
            DX AS dx_code,
            Dx_Codetype AS code_type,
            count(*)::BIGINT AS diagnoses,
            count(DISTINCT PatID)::BIGINT AS patients
        FROM {diagnosis}
        GROUP BY DX, Dx_Codetype
        ORDER BY count(*) DESC, DX
        LIMIT 20
    """,
    "Encounters by type": """
        SELECT
            EncType AS encounter_type,
            count(*)::BIGINT AS encounters,
            count(DISTINCT PatID)::BIGINT AS patients
        FROM {encounter}
        GROUP BY EncType
        ORDER BY count(*) DESC, EncType
    """,
    "Patients with a diagnosis by sex": """
        SELECT
            d.Sex AS sex,
            count(DISTINCT d.PatID)::BIGINT AS patients
        FROM {demographic} d
        SEMI JOIN {diagnosis} x ON d.PatID = x.PatID
        GROUP BY d.Sex
        ORDER BY d.Sex
    """,
    "Dispensings per patient distribution": """
        WITH per_patient AS (
            SELECT PatID, count(*) AS dispensings, sum(RxSup) AS days_supply
            FROM {dispensing}
            GROUP BY PatID
        )
        SELECT
            count(*)::BIGINT AS patients,
            round(avg(dispensings), 2) AS avg_dispensings,
            round(median(dispensings), 2) AS median_dispensings,
            max(dispensings)::BIGINT AS max_dispensings,
            round(avg(days_supply), 1) AS avg_days_supply
        FROM per_patient
    """,
}


def section(title: str):
    print(f"\n{'=' * 60}")
    print(f"  {title}")
    print(f"{'=' * 60}\n")


def tables_in(sql: str) -> list:
    """Table placeholders referenced by a query template, in order of first use."""
    names = []
    for _, field, _, _ in string.Formatter().parse(sql):
        if field and field not in names:
            names.append(field)
    return names


def table_sources(parquet_dir, tables) -> dict:
    """Map table names to read_parquet() expressions, failing on missing files."""
    parquet_dir = Path(parquet_dir)
    sources = {}
    missing = []
    for table in tables:
        path = parquet_dir / f"{table}.parquet"
        if not path.exists():
            missing.append(str(path))
        sources[table] = f"read_parquet('{sql_path(path)}')"
    if missing:
        raise FileNotFoundError(f"Missing Parquet files: {', '.join(missing)}")
    return sources


def timed_query(con, sql: str):
    """Run a query and return (columns, rows, timing) with wall/user/system seconds."""
    cpu_start = os.times()
    wall_start = time.perf_counter()
    result = con.sql(sql)
    rows = result.fetchall()
    columns = list(result.columns)
    wall = time.perf_counter() - wall_start
    cpu_end = os.times()
    timing = {
        "wall": wall,
        "user": cpu_end.user - cpu_start.user,
        "system": cpu_end.system - cpu_start.system,
    }
    return columns, rows, timing


def run_queries(parquet_dir=OUTPUT_DIR, queries=QUERIES, show: bool = True) -> list:
    """Run each query against the Parquet files on a single connection."""
    needed = []
    for sql in queries.values():
        needed.extend(t for t in tables_in(sql) if t not in needed)
    sources = table_sources(parquet_dir, needed)

    con = duckdb.connect()
    results = []
    try:
        for title, template in queries.items():
            columns, rows, timing = timed_query(con, template.format(**sources))
            if show:
                section(title)
                print(pd.DataFrame(rows, columns=columns).to_string(index=False))
                print(f"\n  wall {timing['wall']:.3f}s  user {timing['user']:.3f}s  sys {timing['system']:.3f}s")
            results.append((title, rows, timing))
    finally:
        con.close()
    return results


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run timed SCDM queries over the exported Parquet files.")
    parser.add_argument("--parquet-dir", type=Path, default=OUTPUT_DIR, help="Directory holding {table}.parquet")
    parser.add_argument("--quiet", action="store_true", help="Only print the timing summary")
    args = parser.parse_args(argv)

    try:
        results = run_queries(args.parquet_dir, show=not args.quiet)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        return 1

    section("Timing summary")
    for title, rows, timing in results:
        print(f"  {title:40s} {timing['wall']:8.3f}s wall  {len(rows):>6,} rows")
    total = sum(timing["wall"] for _, _, timing in results)
    print(f"\nAll {len(results)} queries complete in {total:.2f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
