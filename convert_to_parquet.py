"""
Convert partitioned SCDM SAS datasets to Parquet via a DuckDB staging table.

Each SCDM table ships as 20 SAS partition files ({table}_1.sas7bdat ...
{table}_20.sas7bdat). For every table we read the partitions one at a time,
append them to a staging table, COPY the staging table to a ZSTD-compressed
Parquet file, check the export, then drop the staging table.

Usage:
    source .venv/bin/activate
    python convert_to_parquet.py
    python convert_to_parquet.py --tables death enrollment --format xpt
"""

import argparse
import duckdb
import os
import sys
import time
from pathlib import Path

import pyarrow.parquet as pq
import pyreadstat

ROOT = Path(os.path.dirname(os.path.abspath(__file__)))

SOURCE_DIR = ROOT / "data" / "sas"
OUTPUT_DIR = ROOT / "data" / "parquet"
DATABASE = ROOT / "data" / "scdm.duckdb"

TABLES = [
    "death",
    "demographic",
    "diagnosis",
    "dispensing",
    "encounter",
    "enrollment",
    "procedure",
    "facility",
    "provider",
]
PARTITIONS = 20
STAGING_TABLE = "staging"
COMPRESSION = "ZSTD"
COMPRESSIONS = ("ZSTD", "SNAPPY", "GZIP", "UNCOMPRESSED")

# File extension -> pyreadstat reader
EXTENSIONS = {
    "sas7bdat": pyreadstat.read_sas7bdat,
    "xpt": pyreadstat.read_xport,
}


def partition_paths(source_dir, table: str, partitions: int = PARTITIONS, ext: str = "sas7bdat") -> list:
    """Paths of a table's partition files, in load order."""
    source_dir = Path(source_dir)
    return [source_dir / f"{table}_{n}.{ext}" for n in range(1, partitions + 1)]


def read_partition(path):
    """Read one SAS partition fully into a DataFrame."""
    path = Path(path)
    ext = path.suffix.lstrip(".").lower()
    reader = EXTENSIONS.get(ext)
    if reader is None:
        raise ValueError(f"Unsupported partition format: {path.name}")
    df, meta = reader(str(path))
    return df


def sql_path(path) -> str:
    """A path as the body of a single-quoted SQL string literal."""
    return str(path).replace("'", "''")


def _append(con, df, create: bool):
    con.register("part", df)
    try:
        if create:
            con.execute(f"CREATE OR REPLACE TABLE {STAGING_TABLE} AS SELECT * FROM part")
        else:
            con.execute(f"INSERT INTO {STAGING_TABLE} BY NAME SELECT * FROM part")
    finally:
        con.unregister("part")


def load_table(con, paths) -> int:
    """Load partitions into the staging table. Returns the staging row count."""
    paths = [Path(p) for p in paths]
    if not paths:
        raise ValueError("No partitions to load")

    missing = [str(p) for p in paths if not p.exists()]
    if missing:
        raise FileNotFoundError(f"Missing partition files: {', '.join(missing)}")

    for i, path in enumerate(paths):
        df = read_partition(path)
        _append(con, df, create=(i == 0))
        print(f"  {path.name}: {len(df):,} rows")
        del df

    return con.execute(f"SELECT count(*) FROM {STAGING_TABLE}").fetchone()[0]


def export_table(con, output_path, compression: str = COMPRESSION):
    """COPY the staging table to a Parquet file, replacing any existing one."""
    compression = compression.upper()
    if compression not in COMPRESSIONS:
        raise ValueError(f"Unknown compression {compression!r}, expected one of {', '.join(COMPRESSIONS)}")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    con.execute(f"COPY {STAGING_TABLE} TO '{sql_path(output_path)}' (FORMAT PARQUET, COMPRESSION {compression})")


def verify_export(con, output_path) -> int:
    """Check the Parquet file against the staging table: row count and column types."""
    expected = con.execute(f"SELECT count(*) FROM {STAGING_TABLE}").fetchone()[0]
    actual = con.execute(f"SELECT count(*) FROM read_parquet('{sql_path(output_path)}')").fetchone()[0]
    if actual != expected:
        raise ValueError(f"{output_path}: {actual:,} rows exported, staging has {expected:,}")

    staging_cols = [(c[0], c[1]) for c in con.execute(f"DESCRIBE {STAGING_TABLE}").fetchall()]
    parquet_cols = [
        (c[0], c[1])
        for c in con.execute(f"DESCRIBE SELECT * FROM read_parquet('{sql_path(output_path)}')").fetchall()
    ]
    if parquet_cols != staging_cols:
        raise ValueError(f"{output_path}: columns {parquet_cols} do not match staging {staging_cols}")

    return actual


def parquet_codecs(output_path) -> list:
    """Compression codecs used by the column chunks of a Parquet file."""
    meta = pq.ParquetFile(output_path).metadata
    return sorted({
        meta.row_group(i).column(j).compression
        for i in range(meta.num_row_groups)
        for j in range(meta.num_columns)
    })


def convert_table(
    con,
    table: str,
    source_dir=SOURCE_DIR,
    output_dir=OUTPUT_DIR,
    partitions: int = PARTITIONS,
    ext: str = "sas7bdat",
    compression: str = COMPRESSION,
    skip_existing: bool = False,
) -> dict:
    """Convert one SCDM table and return a summary of the run."""
    output_path = Path(output_dir) / f"{table}.parquet"

    if skip_existing and output_path.exists():
        print(f"  [cached] {output_path}")
        return {"table": table, "path": str(output_path), "skipped": True}

    t = time.time()
    paths = partition_paths(source_dir, table, partitions, ext)
    try:
        load_table(con, paths)
        export_table(con, output_path, compression)
        rows = verify_export(con, output_path)
        columns = len(con.execute(f"DESCRIBE {STAGING_TABLE}").fetchall())
    finally:
        con.execute(f"DROP TABLE IF EXISTS {STAGING_TABLE}")

    size_mb = os.path.getsize(output_path) / (1024 * 1024)
    elapsed = time.time() - t
    print(f"  {table}.parquet: {rows:,} rows, {columns} columns, {size_mb:.1f} MB ({elapsed:.1f}s)")

    return {
        "table": table,
        "path": str(output_path),
        "skipped": False,
        "partitions": len(paths),
        "rows": rows,
        "columns": columns,
        "size_mb": size_mb,
        "codecs": parquet_codecs(output_path),
        "seconds": elapsed,
    }


def convert_all(
    tables=TABLES,
    source_dir=SOURCE_DIR,
    output_dir=OUTPUT_DIR,
    database=DATABASE,
    partitions: int = PARTITIONS,
    ext: str = "sas7bdat",
    compression: str = COMPRESSION,
    skip_existing: bool = False,
) -> list:
    """Convert each table in turn on a single DuckDB connection."""
    database = str(database)
    if database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    con = duckdb.connect(database)
    results = []
    try:
        for i, table in enumerate(tables, start=1):
            print(f"\n[{i}/{len(tables)}] {table}")
            results.append(
                convert_table(
                    con,
                    table,
                    source_dir=source_dir,
                    output_dir=output_dir,
                    partitions=partitions,
                    ext=ext,
                    compression=compression,
                    skip_existing=skip_existing,
                )
            )
    finally:
        con.close()
    return results


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Convert partitioned SCDM SAS tables to Parquet.")
    parser.add_argument("--source-dir", type=Path, default=SOURCE_DIR, help="Directory holding the SAS partitions")
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR, help="Directory for the Parquet files")
    parser.add_argument("--database", default=str(DATABASE), help="DuckDB database file, or :memory:")
    parser.add_argument("--tables", nargs="+", choices=TABLES, default=TABLES, help="Tables to convert")
    parser.add_argument("--partitions", type=int, default=PARTITIONS, help="Partition files per table")
    parser.add_argument("--format", dest="ext", choices=sorted(EXTENSIONS), default="sas7bdat")
    parser.add_argument("--compression", type=str.upper, choices=COMPRESSIONS, default=COMPRESSION)
    parser.add_argument("--skip-existing", action="store_true", help="Leave existing Parquet files alone")
    args = parser.parse_args(argv)
    if args.partitions < 1:
        parser.error("--partitions must be at least 1")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)

    print(f"Converting {len(args.tables)} SCDM tables: {args.source_dir} -> {args.output_dir}")
    start = time.time()

    try:
        results = convert_all(
            tables=args.tables,
            source_dir=args.source_dir,
            output_dir=args.output_dir,
            database=args.database,
            partitions=args.partitions,
            ext=args.ext,
            compression=args.compression,
            skip_existing=args.skip_existing,
        )
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    converted = [r for r in results if not r["skipped"]]
    total_rows = sum(r["rows"] for r in converted)
    total_mb = sum(r["size_mb"] for r in converted)
    print(f"\nAll done in {time.time() - start:.0f}s")
    print(f"  Converted: {len(converted)} tables, {total_rows:,} rows, {total_mb:.1f} MB")
    if len(converted) < len(results):
        print(f"  Skipped (already exported): {len(results) - len(converted)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
