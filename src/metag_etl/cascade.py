"""metag_etl.cascade

Hierarchy cascade coordinator: the cross-entity rules a per-row upsert cannot
see on its own.

  IdRemap            patient identity changes (old id -> new id); the batch
                     subtree is built under the new id, old rows untouched
  FirstSampleGuard   static measurements go to the patient's first case
                     sample only
  ControlRegistry    control read sets stored once per control directory and
                     linked to every case sample sequenced against them
  TaxclassLinks      set-union of (classification, taxonomy, rank) links,
                     written additively
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

import psycopg

from metag_etl.normalize import control_dir_pattern
from metag_etl.resolver import first_sample_date
from metag_etl.shared import IdentityConflictError, StaticMeasurementError

# ---------------------------------------------------------------------------
# Patient identity remapping
# ---------------------------------------------------------------------------

@dataclass
class IdRemap:
    """Old patient id -> new patient id for identity changes seen this run."""

    mapping: dict[int, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.mapping)

    def record(
        self,
        conn: psycopg.Connection,
        old_id: int,
        new_id: int,
        id_run: int,
    ) -> bool:
        """Remember and persist one identity change.  Returns True if new."""
        self.mapping[old_id] = new_id
        cur = conn.execute(
            """
            INSERT INTO patient_lineage (id_patient_old, id_patient_new, id_run)
            VALUES (%s, %s, %s)
            ON CONFLICT (id_patient_old, id_patient_new) DO NOTHING
            """,
            (old_id, new_id, id_run),
        )
        return cur.rowcount == 1


def find_predecessor(
    conn: psycopg.Connection,
    alias: str,
    accession: str,
    birthdate: date,
) -> int | None:
    """Latest stored patient sharing the alias but not the full natural key."""
    row = conn.execute(
        """
        SELECT id FROM patient
        WHERE alias = %s
          AND (accession, birthdate) IS DISTINCT FROM (%s, %s)
        ORDER BY id DESC
        LIMIT 1
        """,
        (alias, accession, birthdate),
    ).fetchone()
    return int(row[0]) if row else None


# ---------------------------------------------------------------------------
# First-sample guard
# ---------------------------------------------------------------------------

class FirstSampleGuard:
    """Tracks the current first case sample of each patient in the batch."""

    def __init__(self, static_types: frozenset[str]) -> None:
        self._static_types = static_types
        self._first: dict[int, tuple[int, date]] = {}

    def is_static(self, type_name: str) -> bool:
        return type_name in self._static_types

    def note_sample(self, patient_id: int, sample_id: int, createdate: date) -> None:
        # Uncached patients are looked up in the store on first use.
        current = self._first.get(patient_id)
        if current is not None and createdate < current[1]:
            self._first[patient_id] = (sample_id, createdate)

    def first_sample(self, conn: psycopg.Connection, patient_id: int) -> int | None:
        """Return the first case sample id, consulting the store once."""
        if patient_id not in self._first:
            first = first_sample_date(conn, patient_id)
            if first is None:
                return None
            row = conn.execute(
                """
                SELECT id FROM sample
                WHERE id_patient = %s AND createdate = %s AND NOT iscontrol
                """,
                (patient_id, first),
            ).fetchone()
            self._first[patient_id] = (int(row[0]), first)
        return self._first[patient_id][0]

    def check(
        self,
        conn: psycopg.Connection,
        patient_id: int,
        sample_id: int,
        type_name: str,
    ) -> None:
        """Reject a static measurement aimed at anything but the first sample.

        Raises:
            StaticMeasurementError: If type_name is static and sample_id is not
                the patient's first case sample.
        """
        if not self.is_static(type_name):
            return
        first = self.first_sample(conn, patient_id)
        if first != sample_id:
            raise StaticMeasurementError(
                f"Static measurement '{type_name}' may only be attached to the first "
                f"sample (id {first}) of patient {patient_id}, not sample {sample_id}"
            )


# ---------------------------------------------------------------------------
# Control replication
# ---------------------------------------------------------------------------

@dataclass
class SequencingUnit:
    """One sequencing directory and the samples whose rows point at it."""

    dir_pattern: str
    is_control: bool
    sample_ids: list[int] = field(default_factory=list)
    case_sample_ids: list[int] = field(default_factory=list)
    programs: set[str] = field(default_factory=set)
    databases: set[str] = field(default_factory=set)
    owner_id: int | None = None

    def single(self, values: set[str], label: str) -> str | None:
        if len(values) > 1:
            raise IdentityConflictError(
                f"Multiple {label}s {sorted(values)} for the same data '{self.dir_pattern}'"
            )
        return next(iter(values), None)

    def database_list(self) -> list[str | None]:
        """Every database the unit's reads are classified against; None if unset."""
        return sorted(self.databases) or [None]


class ControlRegistry:
    """Collects case and control sequencing units for one batch."""

    def __init__(self, control_barcode: str, scope: str = "run_barcode") -> None:
        self.control_barcode = control_barcode
        self.scope = scope
        self.units: dict[str, SequencingUnit] = {}

    def control_pattern(self, dir_pattern: str) -> str:
        return control_dir_pattern(dir_pattern, self.control_barcode)

    def add_case(
        self,
        dir_pattern: str,
        sample_id: int,
        program: str | None,
        database: str | None,
    ) -> None:
        """Register a case sample's directory.

        Raises:
            IdentityConflictError: If another case sample already uses it.
        """
        unit = self.units.get(dir_pattern)
        if unit is not None and (unit.is_control or sample_id not in unit.sample_ids):
            raise IdentityConflictError(
                f"Multiple samples share the same directory pattern '{dir_pattern}'"
            )
        if unit is None:
            unit = SequencingUnit(dir_pattern, is_control=False, owner_id=sample_id)
            unit.sample_ids.append(sample_id)
            self.units[dir_pattern] = unit
        if program:
            unit.programs.add(program)
        if database:
            unit.databases.add(database)

    def add_control(
        self,
        dir_pattern: str,
        control_sample_id: int,
        case_sample_id: int,
        program: str | None,
        database: str | None,
    ) -> None:
        pattern = self.control_pattern(dir_pattern)
        unit = self.units.get(pattern)
        if unit is None:
            unit = SequencingUnit(pattern, is_control=True)
            self.units[pattern] = unit
        elif not unit.is_control:
            raise IdentityConflictError(
                f"Directory pattern '{pattern}' used for both case and control reads"
            )
        if control_sample_id not in unit.sample_ids:
            unit.sample_ids.append(control_sample_id)
        if case_sample_id not in unit.case_sample_ids:
            unit.case_sample_ids.append(case_sample_id)
        if program:
            unit.programs.add(program)
        if database:
            unit.databases.add(database)

    def resolve_owner(self, conn: psycopg.Connection, unit: SequencingUnit) -> int:
        """Pick the control sample that stores the unit's reads.

        A control directory already linked in an earlier run keeps its owner;
        otherwise the first control sample of this batch owns the reads.
        """
        if unit.owner_id is not None:
            return unit.owner_id
        row = conn.execute(
            """
            SELECT id_control_sample FROM sample_control
            WHERE dir_pattern = %s
            ORDER BY id_control_sample
            LIMIT 1
            """,
            (unit.dir_pattern,),
        ).fetchone()
        unit.owner_id = int(row[0]) if row else unit.sample_ids[0]
        return unit.owner_id

    def link(
        self,
        conn: psycopg.Connection,
        unit: SequencingUnit,
        id_run: int,
    ) -> int:
        """Attach the unit's stored control reads to its case samples.

        Returns the number of new links.
        """
        owner = self.resolve_owner(conn, unit)
        inserted = 0
        for case_id in unit.case_sample_ids:
            cur = conn.execute(
                """
                INSERT INTO sample_control (id_sample, id_control_sample, dir_pattern, id_run)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id_sample, id_control_sample) DO NOTHING
                """,
                (case_id, owner, unit.dir_pattern, id_run),
            )
            inserted += cur.rowcount
        if self.scope == "run":
            cur = conn.execute(
                """
                INSERT INTO sample_control (id_sample, id_control_sample, dir_pattern, id_run)
                SELECT DISTINCT s.id, %s::bigint, %s::text, %s::bigint
                FROM sequence q
                JOIN sample s ON s.id = q.id_sample
                WHERE NOT s.iscontrol
                  AND q.runid IN (
                      SELECT DISTINCT runid FROM sequence WHERE id_sample = %s
                  )
                ON CONFLICT (id_sample, id_control_sample) DO NOTHING
                """,
                (owner, unit.dir_pattern, id_run, owner),
            )
            inserted += cur.rowcount
        return inserted


# ---------------------------------------------------------------------------
# Taxclass links
# ---------------------------------------------------------------------------

class TaxclassLinks:
    """Set of (classification, taxonomy, rank) links; only ever grows."""

    def __init__(self) -> None:
        self._links: set[tuple[int, int, str]] = set()

    def __len__(self) -> int:
        return len(self._links)

    def __contains__(self, link: tuple[int, int, str]) -> bool:
        return link in self._links

    def add(self, classification_id: int, taxonomy_id: int, rank: str) -> None:
        self._links.add((classification_id, taxonomy_id, rank))

    def union(self, other: TaxclassLinks) -> TaxclassLinks:
        merged = TaxclassLinks()
        merged._links = self._links | other._links
        return merged

    def flush(self, conn: psycopg.Connection, id_run: int) -> int:
        """Insert every link not yet stored.  Returns the number inserted."""
        inserted = 0
        for classification_id, taxonomy_id, rank in sorted(self._links):
            cur = conn.execute(
                """
                INSERT INTO taxclass (id_classification, id_taxonomy, rank, id_run)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id_classification, id_taxonomy, rank) DO NOTHING
                """,
                (classification_id, taxonomy_id, rank, id_run),
            )
            inserted += cur.rowcount
        return inserted
