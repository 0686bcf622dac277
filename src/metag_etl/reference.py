"""metag_etl.reference

Reference dimension seeding: measurement types and WHO growth standards.

Types come from the YAML catalogue (config/measurement_types.yml).  Growth
standards come from the WHO expanded weight-for-age tables exported to CSV,
one file per sex; the first four columns are Day, L, M, S and any further
columns (the precomputed SD curves) are ignored.

Both seeders are idempotent: rows already present with identical values are
left alone.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

import psycopg

from metag_etl.derived import WEIGHT_FOR_AGE
from metag_etl.settings import TypeCatalog
from metag_etl.shared import TableFormatError

log = logging.getLogger(__name__)


@dataclass
class SeedCounters:
    types_inserted: int = 0
    types_updated: int = 0
    types_unchanged: int = 0
    standard_rows_read: int = 0
    standard_rows_inserted: int = 0
    standard_rows_unchanged: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return dict(self.__dict__)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

def seed_types(conn: psycopg.Connection, catalog: TypeCatalog, counters: SeedCounters) -> None:
    for entry in catalog.types.values():
        existing = conn.execute(
            "SELECT category, selection, is_static, unit FROM type WHERE name = %s",
            (entry.name,),
        ).fetchone()
        incoming = (entry.category, entry.selection, entry.is_static, entry.unit)
        if existing is None:
            conn.execute(
                """
                INSERT INTO type (name, category, selection, is_static, unit)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (entry.name, *incoming),
            )
            counters.types_inserted += 1
        elif (existing[0], existing[1] or None, existing[2], existing[3]) != incoming:
            conn.execute(
                """
                UPDATE type
                SET category = %s, selection = %s, is_static = %s, unit = %s
                WHERE name = %s
                """,
                (*incoming, entry.name),
            )
            counters.types_updated += 1
            log.info("type '%s' updated", entry.name)
        else:
            counters.types_unchanged += 1


# ---------------------------------------------------------------------------
# WHO growth standards
# ---------------------------------------------------------------------------

def _read_standard_csv(path: Path, sex: str) -> list[tuple[str, int, Decimal, Decimal, Decimal]]:
    rows: list[tuple[str, int, Decimal, Decimal, Decimal]] = []
    with open(path, encoding="utf-8-sig", newline="") as fh:
        reader = csv.reader(fh)
        header = next(reader, None)
        if not header:
            raise TableFormatError(f"Empty standard file '{path}'")
        for line_no, row in enumerate(reader, start=2):
            if not any(cell.strip() for cell in row):
                continue
            cells = [c.strip() for c in row[:4]]
            if len(cells) < 4 or any(not c for c in cells):
                raise TableFormatError(f"{path}: line {line_no}: empty value in {row[:4]!r}")
            try:
                rows.append((sex, int(cells[0]), Decimal(cells[1]), Decimal(cells[2]), Decimal(cells[3])))
            except (ValueError, InvalidOperation) as exc:
                raise TableFormatError(f"{path}: line {line_no}: {exc}") from exc
    if not rows:
        raise TableFormatError(f"No data rows in standard file '{path}'")
    return rows


def load_who_standard(
    girls_path: Path,
    boys_path: Path,
) -> list[tuple[str, int, Decimal, Decimal, Decimal]]:
    """Return (sex, age_days, L, M, S) rows for both sexes."""
    return _read_standard_csv(girls_path, "f") + _read_standard_csv(boys_path, "m")


def seed_standard(
    conn: psycopg.Connection,
    rows: list[tuple[str, int, Decimal, Decimal, Decimal]],
    counters: SeedCounters,
    name: str = WEIGHT_FOR_AGE,
) -> None:
    """Insert standard rows not yet present.

    Raises:
        TableFormatError: If a stored row disagrees with the file.
    """
    for sex, age, l, m, s in rows:
        counters.standard_rows_read += 1
        existing = conn.execute(
            "SELECT l, m, s FROM standard WHERE name = %s AND sex = %s AND age = %s",
            (name, sex, age),
        ).fetchone()
        if existing is None:
            conn.execute(
                """
                INSERT INTO standard (name, sex, age, l, m, s)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (name, sex, age, l, m, s),
            )
            counters.standard_rows_inserted += 1
        elif tuple(existing) != (l, m, s):
            raise TableFormatError(
                f"Standard '{name}' ({sex}, day {age}) already stored with different values"
            )
        else:
            counters.standard_rows_unchanged += 1


def build_seed_report(counters: SeedCounters, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        f"Reference Seed Report{' (DRY RUN)' if dry_run else ''}",
        "=" * 60,
        f"  Types inserted           : {counters.types_inserted}",
        f"  Types updated            : {counters.types_updated}",
        f"  Types unchanged          : {counters.types_unchanged}",
        f"  Standard rows read       : {counters.standard_rows_read}",
        f"  Standard rows inserted   : {counters.standard_rows_inserted}",
        f"  Standard rows unchanged  : {counters.standard_rows_unchanged}",
        "=" * 60,
    ]
    return "\n".join(lines)
