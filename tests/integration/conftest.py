"""Integration test fixtures.

Applies migrations 0001-0003 against an ephemeral PostgreSQL database
provided by pytest-postgresql and seeds the measurement type catalogue.
"""

from __future__ import annotations

import csv
from dataclasses import replace
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from metag_etl.reference import SeedCounters, seed_types
from metag_etl.settings import load_layout, load_type_catalog

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_core_entities.sql",
    PROJECT_ROOT / "migrations" / "0002_sequencing.sql",
    PROJECT_ROOT / "migrations" / "0003_reference.sql",
]

BATCH_HEADERS = [
    "patient id", "sample date", "hospital code", "birth date", "sex",
    "maternal body mass before pregnancy", "maternal body mass at delivery",
    "mother's height", "mother's birth date",
    "body mass", "feeding mode", "collected by",
    "program", "database", "number of run and barcode",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return a psycopg connection with schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def layout():
    return load_layout()


@pytest.fixture
def catalog():
    return load_type_catalog()


@pytest.fixture
def seeded_conn(db_conn, catalog):
    """db_conn with the measurement type catalogue seeded and committed."""
    conn, dsn = db_conn
    seed_types(conn, catalog, SeedCounters())
    conn.commit()
    return conn, dsn


# ---------------------------------------------------------------------------
# Batch table helpers
# ---------------------------------------------------------------------------

def batch_row(**overrides) -> dict[str, str]:
    """One batch table row; keyword names use underscores for spaces."""
    row = {
        "patient id": "P1",
        "sample date": "2021-01-01",
        "hospital code": "H1",
        "birth date": "2021-01-01",
        "sex": "1",
        "maternal body mass before pregnancy": "",
        "maternal body mass at delivery": "",
        "mother's height": "",
        "mother's birth date": "",
        "body mass": "3200",
        "feeding mode": "1",
        "collected by": "nurse",
        "program": "",
        "database": "",
        "number of run and barcode": "",
    }
    for key, value in overrides.items():
        row[key.replace("_", " ")] = value
    return row


def write_batch(path: Path, rows: list[dict[str, str]]) -> Path:
    with open(path, "w", encoding="utf-8", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=BATCH_HEADERS)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
    return path


# ---------------------------------------------------------------------------
# Sequencing data helpers
# ---------------------------------------------------------------------------

R1_LIN = ">r1\ndomain: Bacteria: 5(5)\nphylum: Firmicutes: 5(5)\n"


def fastq_text(
    reads: list[tuple[str, str, str]],
    runid: str = "run1",
    flowcell: str = "FAK1",
) -> str:
    """reads: (read id, barcode, nucleotides)."""
    out = []
    for readid, barcode, nucs in reads:
        out.append(f"@{readid} runid={runid} barcode={barcode} flow_cell_id={flowcell}")
        out.append(nucs)
        out.append("+")
        out.append("I" * len(nucs))
    return "\n".join(out) + "\n"


def write_unit(root: Path, rel: str, fastq: str, lin: str | None = None) -> None:
    d = root / rel
    d.mkdir(parents=True, exist_ok=True)
    (d / "reads.fastq").write_text(fastq, encoding="utf-8")
    if lin is not None:
        (d / "reads.calc.LIN.txt").write_text(lin, encoding="utf-8")


def seq_row(alias, accession, dir_pattern, program="MetaG", database="db1", **overrides):
    return batch_row(
        patient_id=alias,
        hospital_code=accession,
        program=program,
        database=database,
        **{"number of run and barcode": dir_pattern},
        **overrides,
    )


@pytest.fixture
def data_dir(tmp_path):
    """run1 with two case barcodes and the bar99 control."""
    root = tmp_path / "data"
    write_unit(
        root, "run1/bar01",
        fastq_text([("r1", "barcode01", "ACGT"), ("r2", "barcode01", "ACG")]),
        R1_LIN,
    )
    write_unit(root, "run1/bar02", fastq_text([("r3", "barcode02", "GGCC")]), "No match for r3\n")
    write_unit(
        root, "run1/bar99",
        fastq_text([("c1", "barcode99", "TTTT")]),
        ">c1\ndomain: Bacteria: 1(1)\nphylum: unclassified: 1(1)\n",
    )
    return root


@pytest.fixture
def seq_layout(layout):
    return replace(layout, ranks=["domain", "phylum"])
