"""metag_etl.batch_table

Row normalizer: reads one batch table (CSV, optionally gzip-compressed) and
merges its rows into one PatientRecord per patient id.

Each row carries a patient id, a sample date, the patient's static values
and the time-dependent values for that date.  Rows are merged as follows:

  - A patient may span many rows; a sample date may repeat.
  - Repeated static values must agree.  A blank static never conflicts;
    the non-blank value wins.
  - Repeated time-dependent values at the same date must agree exactly;
    blank vs. non-blank is a conflict.
  - A row with a patient id but no sample date is an error.

A column missing from the header is missing from the record (its key is
absent); a blank cell is present with value None.
"""

from __future__ import annotations

import csv
import gzip
import io
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from metag_etl.normalize import normalize_space, parse_date, trim
from metag_etl.settings import ImportLayout
from metag_etl.shared import ImportCounters, TableFormatError


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class SampleRecord:
    createdate: date
    values: dict[str, str | None] = field(default_factory=dict)
    createdby: str | None = None

    def get(self, column: str) -> str | None:
        return self.values.get(column)


@dataclass
class PatientRecord:
    alias: str
    statics: dict[str, str | None] = field(default_factory=dict)
    samples: dict[date, SampleRecord] = field(default_factory=dict)
    accession: str | None = None
    birthdate: date | None = None

    def ordered_samples(self) -> list[SampleRecord]:
        return [self.samples[d] for d in sorted(self.samples)]


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def _open_text(path: Path) -> io.TextIOBase:
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8-sig", newline="")
    return open(path, encoding="utf-8-sig", newline="")


def _check_header(headers: list[str] | None, layout: ImportLayout) -> list[str]:
    if not headers:
        raise TableFormatError("Empty table file.")
    if any(not (h or "").strip() for h in headers):
        raise TableFormatError("Empty field in header.")
    headers = [h.strip() for h in headers]
    for required in (layout.id_column, layout.timepoint_column):
        if required not in headers:
            raise TableFormatError(f"Required column '{required}' not found in header.")
    return headers


def _cell(row: dict[str, str], column: str) -> str | None:
    return normalize_space(row.get(column))


def _checked_date(value: str | None, column: str, line_no: int) -> str | None:
    """Validate a date-bearing cell and return it in ISO form."""
    try:
        parsed = parse_date(value)
    except ValueError as exc:
        raise TableFormatError(f"line {line_no}: column '{column}': {exc}") from exc
    return parsed.isoformat() if parsed is not None else None


def read_batch_table(
    path: Path,
    layout: ImportLayout,
    counters: ImportCounters | None = None,
) -> list[PatientRecord]:
    """Parse a batch table into PatientRecords, in first-seen order.

    Raises:
        TableFormatError: On structural problems or contradicting rows.
    """
    with _open_text(path) as fh:
        reader = csv.DictReader(fh)
        headers = _check_header(reader.fieldnames, layout)
        reader.fieldnames = headers
        return merge_rows(reader, headers, layout, counters)


def merge_rows(
    rows,
    headers: list[str],
    layout: ImportLayout,
    counters: ImportCounters | None = None,
) -> list[PatientRecord]:
    """Merge raw row dicts into PatientRecords (see module docstring)."""
    header_set = set(headers)
    static_cols = [c for c in layout.static_columns if c in header_set]
    sample_cols = [c for c in layout.measurement_columns if c in header_set]
    if layout.createdby_column and layout.createdby_column in header_set:
        sample_cols.append(layout.createdby_column)
    date_cols = set(layout.date_columns)

    patients: dict[str, PatientRecord] = {}

    # Line 1 is the header.
    for line_no, row in enumerate(rows, start=2):
        alias = trim(row.get(layout.id_column))
        if alias is None:
            continue
        if counters is not None:
            counters.rows_read += 1

        raw_time = trim(row.get(layout.timepoint_column))
        if raw_time is None:
            raise TableFormatError(f"line {line_no}: no date for patient '{alias}'.")
        try:
            createdate = parse_date(raw_time)
        except ValueError as exc:
            raise TableFormatError(f"line {line_no}: {exc}") from exc

        statics: dict[str, str | None] = {}
        for col in static_cols:
            val = _cell(row, col)
            statics[col] = _checked_date(val, col, line_no) if col in date_cols else val

        values: dict[str, str | None] = {}
        for col in sample_cols:
            val = _cell(row, col)
            values[col] = _checked_date(val, col, line_no) if col in date_cols else val

        patient = patients.get(alias)
        if patient is None:
            patient = PatientRecord(alias=alias)
            patients[alias] = patient
        _merge_statics(patient, statics)
        _merge_sample(patient, createdate, values)

    for patient in patients.values():
        _finalize(patient, layout)
    if counters is not None:
        counters.patients_read += len(patients)
    return list(patients.values())


def _merge_statics(patient: PatientRecord, statics: dict[str, str | None]) -> None:
    for name, value in statics.items():
        if name not in patient.statics or patient.statics[name] is None:
            patient.statics[name] = value
        elif value is not None and value != patient.statics[name]:
            raise TableFormatError(
                f"Different values for '{name}' for id '{patient.alias}'."
            )


def _merge_sample(
    patient: PatientRecord,
    createdate: date,
    values: dict[str, str | None],
) -> None:
    sample = patient.samples.get(createdate)
    if sample is None:
        patient.samples[createdate] = SampleRecord(createdate=createdate, values=dict(values))
        return
    for name, value in values.items():
        if name in sample.values and sample.values[name] != value:
            raise TableFormatError(
                f"Different values for '{name}' at time '{createdate.isoformat()}' "
                f"for id '{patient.alias}'."
            )
        sample.values[name] = value


def _finalize(patient: PatientRecord, layout: ImportLayout) -> None:
    patient.accession = patient.statics.get(layout.accession_column)
    raw_birth = patient.statics.get(layout.birthdate_column)
    try:
        patient.birthdate = parse_date(raw_birth)
    except ValueError as exc:
        raise TableFormatError(f"Birth date for id '{patient.alias}': {exc}") from exc
    if layout.createdby_column:
        for sample in patient.samples.values():
            sample.createdby = sample.values.pop(layout.createdby_column, None)
