"""metag_etl.resolver

Natural-key resolver.

For each incoming record and entity type, looks up the persisted row by its
natural key (never by surrogate id) and classifies the situation:

  new        no row with this key exists
  unchanged  a row exists and every non-blank incoming value equals it
  changed    a row exists and at least one non-key value differs
  conflict   the key is well-formed but its combination with stored state is
             invalid (duplicate timepoint, retroactive first sample)

Blank incoming values never count as a change: they are reported in
refused_fields and the stored value is kept.

Resolution is strictly equality-based.  Nullable key columns (taxonomy.name)
compare with IS NOT DISTINCT FROM so that NULL matches NULL.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any

import psycopg

from metag_etl.derived import NO_TIMEPOINT, timepoint_label
from metag_etl.shared import MissingAnchorError

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------

NEW = "new"
UNCHANGED = "unchanged"
CHANGED = "changed"
CONFLICT = "conflict"

VALID_STATES = (NEW, UNCHANGED, CHANGED, CONFLICT)


# ---------------------------------------------------------------------------
# Entity metadata
# ---------------------------------------------------------------------------

NATURAL_KEYS: dict[str, tuple[str, ...]] = {
    "patient":        ("alias", "accession", "birthdate"),
    "sample":         ("id_patient", "createdate", "iscontrol"),
    "measurement":    ("id_sample", "id_type"),
    "sequence":       ("id_sample", "runid", "barcode", "readid"),
    "classification": ("id_sequence", "program", "database"),
    "taxonomy":       ("name", "rank"),
}

VALUE_FIELDS: dict[str, tuple[str, ...]] = {
    "patient":        (),
    "sample":         ("createdby",),
    "measurement":    ("value",),
    "sequence":       ("flowcellid", "callermodel", "nucs", "quality"),
    "classification": (),
    "taxonomy":       (),
}

NULLABLE_KEYS: dict[str, frozenset[str]] = {
    "taxonomy": frozenset({"name"}),
}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

@dataclass
class Resolution:
    entity_type: str
    state: str
    key: dict[str, Any]
    values: dict[str, Any] = field(default_factory=dict)
    row_id: int | None = None
    version: int | None = None
    id_run: int | None = None
    persisted: dict[str, Any] = field(default_factory=dict)
    changed_fields: list[str] = field(default_factory=list)
    refused_fields: list[str] = field(default_factory=list)
    reason: str | None = None


def _check_anchor(entity_type: str, record: dict[str, Any]) -> dict[str, Any]:
    if entity_type not in NATURAL_KEYS:
        raise ValueError(f"Unknown entity type '{entity_type}'")
    nullable = NULLABLE_KEYS.get(entity_type, frozenset())
    key: dict[str, Any] = {}
    missing: list[str] = []
    for col in NATURAL_KEYS[entity_type]:
        if col not in record or (record[col] is None and col not in nullable):
            missing.append(col)
            continue
        key[col] = record[col]
    if missing:
        raise MissingAnchorError(
            f"{entity_type} record is missing natural key field(s) {missing}: {record!r}"
        )
    return key


def _lookup(
    conn: psycopg.Connection,
    entity_type: str,
    key: dict[str, Any],
) -> dict[str, Any] | None:
    nullable = NULLABLE_KEYS.get(entity_type, frozenset())
    cols = ["id", "version", "id_run", *VALUE_FIELDS[entity_type]]
    where = " AND ".join(
        f"{col} IS NOT DISTINCT FROM %s" if col in nullable else f"{col} = %s"
        for col in key
    )
    row = conn.execute(
        f"SELECT {', '.join(cols)} FROM {entity_type} WHERE {where}",
        tuple(key.values()),
    ).fetchone()
    if row is None:
        return None
    return dict(zip(cols, row))


def _compare(
    entity_type: str,
    record: dict[str, Any],
    persisted: dict[str, Any],
) -> tuple[list[str], list[str]]:
    changed: list[str] = []
    refused: list[str] = []
    for col in VALUE_FIELDS[entity_type]:
        incoming = record.get(col)
        stored = persisted.get(col)
        if incoming is None:
            if stored is not None:
                refused.append(col)
            continue
        if incoming != stored:
            changed.append(col)
    return changed, refused


def resolve(
    conn: psycopg.Connection,
    entity_type: str,
    record: dict[str, Any],
) -> Resolution:
    """Classify one incoming record against the store.

    Args:
        conn: Open psycopg connection; sees rows written earlier in the
              current transaction.
        entity_type: One of NATURAL_KEYS.
        record: Natural-key fields plus any non-key values.  A value field
                that is absent or None is treated as blank.

    Raises:
        MissingAnchorError: If a natural-key field is missing.
    """
    key = _check_anchor(entity_type, record)
    values = {col: record.get(col) for col in VALUE_FIELDS[entity_type]}

    if entity_type == "sample":
        reason = _sample_conflict(conn, record)
        if reason is not None:
            return Resolution(entity_type, CONFLICT, key, values, reason=reason)

    persisted = _lookup(conn, entity_type, key)
    if persisted is None:
        return Resolution(entity_type, NEW, key, values)

    changed, refused = _compare(entity_type, record, persisted)
    return Resolution(
        entity_type,
        CHANGED if changed else UNCHANGED,
        key,
        values,
        row_id=persisted["id"],
        version=persisted["version"],
        id_run=persisted["id_run"],
        persisted={c: persisted[c] for c in VALUE_FIELDS[entity_type]},
        changed_fields=changed,
        refused_fields=refused,
    )


# ---------------------------------------------------------------------------
# Sample cross-checks
# ---------------------------------------------------------------------------

def first_sample_date(conn: psycopg.Connection, patient_id: int) -> date | None:
    """Return the earliest stored non-control sample date for a patient."""
    row = conn.execute(
        "SELECT min(createdate) FROM sample WHERE id_patient = %s AND NOT iscontrol",
        (patient_id,),
    ).fetchone()
    return row[0] if row else None


def _sample_conflict(conn: psycopg.Connection, record: dict[str, Any]) -> str | None:
    """Return a conflict reason for a sample record, or None if it is valid."""
    patient_id = record["id_patient"]
    createdate: date = record["createdate"]
    iscontrol = bool(record["iscontrol"])

    row = conn.execute(
        "SELECT alias, birthdate FROM patient WHERE id = %s", (patient_id,)
    ).fetchone()
    if row is None:
        raise MissingAnchorError(f"sample references unknown patient id {patient_id}")
    alias, birthdate = row

    if not iscontrol:
        first = first_sample_date(conn, patient_id)
        if first is not None and createdate < first:
            return (
                f"cannot set a new first date for patient '{alias}': "
                f"{createdate.isoformat()} is before {first.isoformat()}"
            )

    label = timepoint_label(birthdate, createdate)
    if label == NO_TIMEPOINT:
        return (
            f"timepoint invalid or not unique: '{label}' for patient '{alias}', "
            f"create date {createdate.isoformat()}, iscontrol {iscontrol}"
        )

    others = conn.execute(
        """
        SELECT createdate FROM sample
        WHERE id_patient = %s AND iscontrol = %s AND createdate <> %s
        """,
        (patient_id, iscontrol, createdate),
    ).fetchall()
    for (other_date,) in others:
        if timepoint_label(birthdate, other_date) == label:
            return (
                f"timepoint invalid or not unique: '{label}' for patient '{alias}', "
                f"create date {createdate.isoformat()} collides with "
                f"{other_date.isoformat()}, iscontrol {iscontrol}"
            )
    return None
