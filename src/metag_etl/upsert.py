"""metag_etl.upsert

Versioned upsert core.

Applies a Resolution to the store:

  new        INSERT with version = 1
  unchanged  no statement issued; version untouched
  changed    UPDATE of the differing non-key columns; version + 1, at most
             once per import run however many fields or records touch the row
  conflict   IdentityConflictError

Blank incoming values (refused_fields) are never written; the stored value
survives and the remaining fields stay eligible for update.  No DELETE and no
UPDATE of a natural-key column is ever issued from here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import psycopg

from metag_etl.resolver import (
    CHANGED,
    CONFLICT,
    NEW,
    UNCHANGED,
    VALUE_FIELDS,
    Resolution,
    resolve,
)
from metag_etl.shared import IdentityConflictError, ImportCounters

INSERTED = "inserted"
UPDATED = "updated"
NOOP = "unchanged"


@dataclass
class UpsertResult:
    action: str
    row_id: int
    refused_fields: list[str] = field(default_factory=list)


def _insert(
    conn: psycopg.Connection,
    resolution: Resolution,
    id_run: int,
) -> int:
    entity_type = resolution.entity_type
    data: dict[str, Any] = dict(resolution.key)
    for col in VALUE_FIELDS[entity_type]:
        if resolution.values.get(col) is not None:
            data[col] = resolution.values[col]
    cols = [*data.keys(), "version", "id_run"]
    placeholders = ", ".join(["%s"] * len(cols))
    row = conn.execute(
        f"""
        INSERT INTO {entity_type} ({', '.join(cols)})
        VALUES ({placeholders})
        RETURNING id
        """,
        (*data.values(), 1, id_run),
    ).fetchone()
    return int(row[0])


def _update(
    conn: psycopg.Connection,
    resolution: Resolution,
    id_run: int,
) -> None:
    changed = resolution.changed_fields
    assignments = ", ".join(f"{col} = %s" for col in changed)
    conn.execute(
        f"""
        UPDATE {resolution.entity_type}
        SET {assignments},
            version = CASE WHEN id_run = %s THEN version ELSE version + 1 END,
            id_run  = %s
        WHERE id = %s
        """,
        (*(resolution.values[c] for c in changed), id_run, id_run, resolution.row_id),
    )


def apply_resolution(
    conn: psycopg.Connection,
    resolution: Resolution,
    id_run: int,
) -> UpsertResult:
    """Perform the write (or non-write) a Resolution calls for.

    Raises:
        IdentityConflictError: For a conflict resolution.
    """
    if resolution.state == CONFLICT:
        raise IdentityConflictError(resolution.reason or f"{resolution.entity_type} conflict")

    if resolution.state == NEW:
        row_id = _insert(conn, resolution, id_run)
        return UpsertResult(INSERTED, row_id)

    if resolution.row_id is None:
        raise ValueError(f"{resolution.state} resolution without row id")

    if resolution.state == UNCHANGED:
        return UpsertResult(NOOP, resolution.row_id, list(resolution.refused_fields))

    if resolution.state == CHANGED:
        _update(conn, resolution, id_run)
        return UpsertResult(UPDATED, resolution.row_id, list(resolution.refused_fields))

    raise ValueError(f"Unknown resolution state '{resolution.state}'")


def upsert(
    conn: psycopg.Connection,
    entity_type: str,
    record: dict[str, Any],
    id_run: int,
    counters: ImportCounters | None = None,
) -> UpsertResult:
    """Resolve and apply one record, tallying the outcome into counters."""
    result = apply_resolution(conn, resolve(conn, entity_type, record), id_run)
    if counters is not None:
        counters.tally(entity_type, result.action)
        counters.deletions_refused += len(result.refused_fields)
    return result
