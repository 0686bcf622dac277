"""metag_etl.pipeline

Batch import: one batch table plus its sequencing directories, applied to the
store inside one BatchTransaction.

Order of work (each level anchored on the one before):

  1. patients         natural key (alias, accession, birthdate); a new key
                      for a known alias is an identity change
  2. samples          one case sample per (patient, date); one control sample
                      per case sample with a sequencing directory
  3. measurements     time-dependent values on their own sample, statics on
                      the patient's first case sample
  4. sequencing units per directory: FASTQ -> sequence, classification ->
                      classification / taxonomy / taxclass
  5. control links    case sample -> control sample that owns the reads

Acquisition files that cannot be located, and FASTQ files without any read,
are a WARNING: the unit is skipped and recorded in the skips CSV.  A missing
classification file keeps the reads and skips only their classification.
Control reads are classified once per database named by their case samples.
Everything else that goes wrong is a BatchError and the whole batch is rolled
back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

import psycopg

from metag_etl.acquisition import (
    FastqRead,
    assign_taxa,
    classifier_pattern,
    find_files,
    parse_fastq,
    parse_metag,
    read_all,
)
from metag_etl.batch_table import PatientRecord, SampleRecord, read_batch_table
from metag_etl.cascade import (
    ControlRegistry,
    FirstSampleGuard,
    IdRemap,
    SequencingUnit,
    TaxclassLinks,
    find_predecessor,
)
from metag_etl.normalize import parse_date, parse_numeric, translate_code
from metag_etl.resolver import NEW, resolve
from metag_etl.settings import ImportLayout, TypeCatalog
from metag_etl.shared import (
    ImportCounters,
    ResourceNotFoundError,
    SkipWriter,
    TableFormatError,
)
from metag_etl.transaction import BatchOutcome, BatchTransaction
from metag_etl.upsert import apply_resolution, upsert

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stored type rows
# ---------------------------------------------------------------------------

@dataclass
class StoredType:
    id: int
    name: str
    category: str
    selection: list[str] | None
    is_static: bool
    codes: dict[str, str] = field(default_factory=dict)


def load_stored_types(conn: psycopg.Connection, catalog: TypeCatalog) -> dict[str, StoredType]:
    """Seeded type rows, with code translations from the catalogue."""
    rows = conn.execute(
        "SELECT id, name, category, selection, is_static FROM type"
    ).fetchall()
    out: dict[str, StoredType] = {}
    for type_id, name, category, selection, is_static in rows:
        entry = catalog.get(name)
        out[name] = StoredType(
            id=int(type_id),
            name=name,
            category=category,
            selection=list(selection) if selection else None,
            is_static=bool(is_static),
            codes=dict(entry.codes) if entry else {},
        )
    return out


def check_value(stored: StoredType, raw: str | None) -> str | None:
    """Translate and validate one cell against its type.

    Raises:
        TableFormatError: On an untranslatable code, a value outside the
            type's selection or a value of the wrong category.
    """
    try:
        value = translate_code(raw, stored.codes)
    except ValueError as exc:
        raise TableFormatError(f"'{stored.name}': {exc}") from exc
    if value is None:
        return None
    if stored.selection and value not in stored.selection:
        raise TableFormatError(
            f"'{stored.name}': value '{value}' not in selection {stored.selection}"
        )
    if stored.category == "i" and parse_numeric(value) is None:
        raise TableFormatError(f"'{stored.name}': '{value}' is not a number")
    if stored.category == "d":
        try:
            parse_date(value)
        except ValueError as exc:
            raise TableFormatError(f"'{stored.name}': {exc}") from exc
    return value


# ---------------------------------------------------------------------------
# Batch context
# ---------------------------------------------------------------------------

class BatchImporter:
    """Applies merged PatientRecords and their sequencing data to the store."""

    def __init__(
        self,
        tx: BatchTransaction,
        layout: ImportLayout,
        catalog: TypeCatalog,
        data_dir: Path | None,
        skips: SkipWriter | None = None,
        control_scope: str | None = None,
    ) -> None:
        self.tx = tx
        self.conn = tx.conn
        self.counters: ImportCounters = tx.counters
        self.layout = layout
        self.catalog = catalog
        self.data_dir = data_dir
        self.skips = skips
        self.types = load_stored_types(self.conn, catalog)
        self.remap = IdRemap()
        self.guard = FirstSampleGuard(
            frozenset(n for n, t in self.types.items() if t.is_static)
        )
        self.registry = ControlRegistry(
            layout.control_barcode, control_scope or layout.control_scope
        )
        self.links = TaxclassLinks()
        self._taxa: dict[tuple[str | None, str], int] = {}

    @property
    def id_run(self) -> int:
        if self.tx.id_run is None:
            raise RuntimeError("Transaction is not open")
        return self.tx.id_run

    # ------------------------------------------------------------------
    # Table level
    # ------------------------------------------------------------------

    def run(self, patients: list[PatientRecord]) -> None:
        for patient in patients:
            self.import_patient(patient)
        if self.data_dir is None:
            if self.registry.units:
                self.tx.warn("No data directory given; sequencing data not imported.")
            return
        for unit in self.registry.units.values():
            self.import_unit(unit)
        self.counters.taxclass_links_inserted += self.links.flush(self.conn, self.id_run)

    def import_patient(self, patient: PatientRecord) -> int:
        record = {
            "alias": patient.alias,
            "accession": patient.accession,
            "birthdate": patient.birthdate,
        }
        resolution = resolve(self.conn, "patient", record)
        predecessor = None
        if resolution.state == NEW:
            predecessor = find_predecessor(
                self.conn, patient.alias, patient.accession, patient.birthdate
            )
        result = apply_resolution(self.conn, resolution, self.id_run)
        self.counters.tally("patient", result.action)
        patient_id = result.row_id

        if predecessor is not None:
            if self.remap.record(self.conn, predecessor, patient_id, self.id_run):
                self.counters.patient_identity_changes += 1
            log.info(
                "identity change for patient '%s': id %s -> %s",
                patient.alias, predecessor, patient_id,
            )

        sample_ids: dict[date, int] = {}
        for sample in patient.ordered_samples():
            sample_ids[sample.createdate] = self.import_sample(patient_id, sample)

        for sample in patient.ordered_samples():
            self.import_measurements(patient_id, sample_ids[sample.createdate], sample)
        self.import_statics(patient_id, patient)
        return patient_id

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    def import_sample(self, patient_id: int, sample: SampleRecord) -> int:
        result = upsert(
            self.conn,
            "sample",
            {
                "id_patient": patient_id,
                "createdate": sample.createdate,
                "iscontrol": False,
                "createdby": sample.createdby,
            },
            self.id_run,
            self.counters,
        )
        self.guard.note_sample(patient_id, result.row_id, sample.createdate)

        dir_pattern = sample.get(self.layout.dir_column)
        if dir_pattern:
            program = sample.get(self.layout.program_column)
            database = sample.get(self.layout.database_column)
            self.registry.add_case(dir_pattern, result.row_id, program, database)
            # Directories without a barcode segment have no run control.
            if self.registry.control_pattern(dir_pattern) == dir_pattern:
                return result.row_id
            control = upsert(
                self.conn,
                "sample",
                {
                    "id_patient": patient_id,
                    "createdate": sample.createdate,
                    "iscontrol": True,
                },
                self.id_run,
                self.counters,
            )
            self.registry.add_control(
                dir_pattern, control.row_id, result.row_id, program, database
            )
        return result.row_id

    # ------------------------------------------------------------------
    # Measurements
    # ------------------------------------------------------------------

    def _stored_type(self, name: str) -> StoredType:
        stored = self.types.get(name)
        if stored is None:
            raise TableFormatError(f"Unknown measurement type '{name}'")
        return stored

    def write_measurement(
        self,
        patient_id: int,
        sample_id: int,
        name: str,
        raw: str | None,
    ) -> None:
        stored = self._stored_type(name)
        value = check_value(stored, raw)
        self.guard.check(self.conn, patient_id, sample_id, name)
        resolution = resolve(
            self.conn,
            "measurement",
            {"id_sample": sample_id, "id_type": stored.id, "value": value},
        )
        if resolution.state == NEW and value is None:
            return
        result = apply_resolution(self.conn, resolution, self.id_run)
        self.counters.tally("measurement", result.action)
        self.counters.deletions_refused += len(result.refused_fields)

    def import_measurements(self, patient_id: int, sample_id: int, sample: SampleRecord) -> None:
        excluded = self.layout.sequencing_columns
        for name in self.layout.measurement_columns:
            if name in excluded or name not in sample.values:
                continue
            self.write_measurement(patient_id, sample_id, name, sample.values[name])

    def import_statics(self, patient_id: int, patient: PatientRecord) -> None:
        first = self.guard.first_sample(self.conn, patient_id)
        if first is None:
            return
        excluded = self.layout.key_columns
        for name in self.layout.static_columns:
            if name in excluded or name not in patient.statics:
                continue
            self.write_measurement(patient_id, first, name, patient.statics[name])

    # ------------------------------------------------------------------
    # Sequencing units
    # ------------------------------------------------------------------

    def _skip(self, unit: SequencingUnit, message: str, counter: str = "units_skipped") -> None:
        self.tx.warn(message)
        setattr(self.counters, counter, getattr(self.counters, counter) + 1)
        if self.skips is not None:
            self.skips.write(
                {
                    "dir_pattern": unit.dir_pattern,
                    "is_control": str(unit.is_control).lower(),
                    "sample_ids": " ".join(str(s) for s in unit.sample_ids),
                },
                message,
            )

    def import_unit(self, unit: SequencingUnit) -> None:
        program = unit.single(unit.programs, "classifier")
        owner = self.registry.resolve_owner(self.conn, unit) if unit.is_control else unit.owner_id

        reads = self._reads(unit)
        if reads:
            lineages = None
            if program:
                lineages = self._lineages(unit, program, list(reads))
            else:
                self.tx.warn(
                    f"No program given for '{unit.dir_pattern}'; reads stored without classification."
                )
            databases = unit.database_list()
            for read in reads.values():
                sequence_id = self._write_sequence(owner, read)
                if lineages is None:
                    continue
                for database in databases:
                    self._write_classification(
                        sequence_id, program, database, lineages[read.readid]
                    )

        if unit.is_control:
            self.counters.control_links_inserted += self.registry.link(
                self.conn, unit, self.id_run
            )

    def _reads(self, unit: SequencingUnit) -> dict[str, FastqRead] | None:
        try:
            paths = find_files(self.data_dir, unit.dir_pattern, self.layout.fastq_pattern)
        except ResourceNotFoundError as exc:
            self._skip(unit, f"FASTQ for '{unit.dir_pattern}' skipped: {exc}")
            return None
        text = read_all(paths)
        if not text.strip():
            self._skip(unit, f"FASTQ for '{unit.dir_pattern}' skipped: no reads in {len(paths)} file(s)")
            return None
        reads = parse_fastq(text)
        log.debug("%s: %d reads from %d file(s)", unit.dir_pattern, len(reads), len(paths))
        return reads

    def _lineages(
        self,
        unit: SequencingUnit,
        program: str,
        read_ids: list[str],
    ) -> dict[str, dict[str, str | None]] | None:
        pattern = classifier_pattern(program, self.layout.classifiers)
        try:
            paths = find_files(self.data_dir, unit.dir_pattern, pattern)
        except ResourceNotFoundError as exc:
            self._skip(
                unit,
                f"Classification for '{unit.dir_pattern}' skipped: {exc}",
                counter="classifications_skipped",
            )
            return None
        taxa = parse_metag(read_all(paths), self.layout.ranks)
        return assign_taxa(read_ids, taxa, self.layout.ranks, unit.dir_pattern)

    def _write_sequence(self, sample_id: int, read: FastqRead) -> int:
        result = upsert(
            self.conn,
            "sequence",
            {
                "id_sample": sample_id,
                "runid": read.runid,
                "barcode": read.barcode,
                "readid": read.readid,
                "flowcellid": read.flowcellid,
                "callermodel": read.callermodel,
                "nucs": read.nucs,
                "quality": read.quality,
            },
            self.id_run,
            self.counters,
        )
        return result.row_id

    def _write_classification(
        self,
        sequence_id: int,
        program: str,
        database: str | None,
        lineage: dict[str, str | None],
    ) -> None:
        result = upsert(
            self.conn,
            "classification",
            {"id_sequence": sequence_id, "program": program, "database": database},
            self.id_run,
            self.counters,
        )
        for rank, name in lineage.items():
            self.links.add(result.row_id, self._taxonomy_id(name, rank), rank)

    def _taxonomy_id(self, name: str | None, rank: str) -> int:
        key = (name, rank)
        if key not in self._taxa:
            result = upsert(
                self.conn, "taxonomy", {"name": name, "rank": rank}, self.id_run, self.counters
            )
            self._taxa[key] = result.row_id
        return self._taxa[key]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_batch_import(
    conn: psycopg.Connection,
    table_path: Path,
    layout: ImportLayout,
    catalog: TypeCatalog,
    run_id: str,
    data_dir: Path | None = None,
    dry_run: bool = False,
    skips: SkipWriter | None = None,
    control_scope: str | None = None,
    counters: ImportCounters | None = None,
) -> BatchOutcome:
    """Import one batch table (and its sequencing data) in one transaction."""

    def work(tx: BatchTransaction) -> None:
        patients = read_batch_table(table_path, layout, tx.counters)
        log.info("%s: %d patient(s), %d row(s)", table_path, len(patients), tx.counters.rows_read)
        BatchImporter(tx, layout, catalog, data_dir, skips, control_scope).run(patients)

    with BatchTransaction(conn, run_id, str(table_path), dry_run, counters) as tx:
        return tx.execute(work)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_import_report(outcome: BatchOutcome, dry_run: bool = False) -> str:
    c = outcome.counters
    lines = [
        "=" * 60,
        f"Batch Import Report{' (DRY RUN)' if dry_run else ''}",
        "=" * 60,
        f"  Status                   : {outcome.status}",
        f"  Rows read                : {c.rows_read}",
        f"  Patients read            : {c.patients_read}",
        f"  Patients ins/upd/same    : {c.patients_inserted}/{c.patients_updated}/{c.patients_unchanged}",
        f"  Identity changes         : {c.patient_identity_changes}",
        f"  Samples ins/upd/same     : {c.samples_inserted}/{c.samples_updated}/{c.samples_unchanged}",
        f"  Measurements ins/upd/same: {c.measurements_inserted}/{c.measurements_updated}/{c.measurements_unchanged}",
        f"  Deletions refused        : {c.deletions_refused}",
        f"  Sequences ins/upd/same   : {c.sequences_inserted}/{c.sequences_updated}/{c.sequences_unchanged}",
        f"  Classifications inserted : {c.classifications_inserted}",
        f"  Taxa inserted            : {c.taxa_inserted}",
        f"  Taxclass links inserted  : {c.taxclass_links_inserted}",
        f"  Control links inserted   : {c.control_links_inserted}",
        f"  Units skipped            : {c.units_skipped}",
        f"  Classifications skipped  : {c.classifications_skipped}",
    ]
    if outcome.error:
        lines.append(f"  Error                    : {outcome.error}")
    if outcome.warnings:
        lines.append(f"  Warnings ({len(outcome.warnings)}):")
        for w in outcome.warnings[:20]:
            lines.append(f"    - {w}")
    lines.append("=" * 60)
    return "\n".join(lines)
