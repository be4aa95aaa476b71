import duckdb
import pandas as pd
import pyreadstat
import pytest


@pytest.fixture
def sas_dir(tmp_path):
    path = tmp_path / "sas"
    path.mkdir()
    return path


@pytest.fixture
def write_partitions(sas_dir):
    """Write {table}_{n}.xpt partitions with the given row counts."""

    def _write(table, sizes, extra_column_in=None):
        paths = []
        offset = 0
        for n, size in enumerate(sizes, start=1):
            df = pd.DataFrame(
                {
                    "PATID": [f"P{offset + i:04d}" for i in range(size)],
                    "AGE": [float(30 + offset + i) for i in range(size)],
                    "SOURCE": ["A" if i % 2 else "B" for i in range(size)],
                }
            )
            if extra_column_in == n:
                df["EXTRA"] = 1.0
            path = sas_dir / f"{table}_{n}.xpt"
            pyreadstat.write_xport(df, str(path), table_name="PART")
            paths.append(path)
            offset += size
        return paths

    return _write


@pytest.fixture
def con():
    con = duckdb.connect()
    yield con
    con.close()


SCDM_FRAMES = {
    "death": "SELECT * FROM (VALUES ('P1', 'C')) t(PatID, Source)",
    "demographic": "SELECT * FROM (VALUES ('P1', 'F'), ('P2', 'M'), ('P3', 'F')) t(PatID, Sex)",
    "diagnosis": """
        SELECT * FROM (VALUES
            ('P1', 'E11.9', '10'),
            ('P1', 'I10', '10'),
            ('P2', 'I10', '10'),
            ('P1', 'I10', '10')
        ) t(PatID, DX, Dx_Codetype)
    """,
    "dispensing": "SELECT * FROM (VALUES ('P1', 30), ('P1', 30), ('P2', 90)) t(PatID, RxSup)",
    "encounter": "SELECT * FROM (VALUES ('P1', 'AV'), ('P2', 'AV'), ('P2', 'IP')) t(PatID, EncType)",
    "enrollment": "SELECT * FROM (VALUES ('P1', 'Y', 'Y'), ('P2', 'Y', 'N'), ('P3', 'Y', 'Y')) t(PatID, MedCov, DrugCov)",
    "procedure": "SELECT * FROM (VALUES ('P1', '99213')) t(PatID, PX)",
    "facility": "SELECT * FROM (VALUES ('F1', '021')) t(FacilityID, Facility_Location)",
    "provider": "SELECT * FROM (VALUES ('D1', '207Q00000X')) t(ProviderID, Specialty)",
}


@pytest.fixture
def parquet_dir(tmp_path):
    """A directory with one small Parquet file per SCDM table."""
    path = tmp_path / "parquet"
    path.mkdir()
    con = duckdb.connect()
    for table, sql in SCDM_FRAMES.items():
        con.execute(f"COPY ({sql}) TO '{path / table}.parquet' (FORMAT PARQUET)")
    con.close()
    return path
