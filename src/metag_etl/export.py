"""metag_etl.export

Read-only export of stored classifications for microbiome web tools
(MicrobiomeAnalyst, Namco).

For a set of sample ids three tab-separated tables are built:

  otu       one row per distinct lineage (OTU0, OTU1, ...), one column per
            exported sample, read counts as values
  taxonomy  OTU id -> Kingdom .. Species
  metadata  one row per exported sample: z_score_category first, then the
            remaining metadata columns in name order

An exported sample is one (sample, program, database) combination, named
`<alias>_<timepoint>_<t|f>_<program>_<database>`.  Lineages whose domain is
blacklisted (default FILTERED) are dropped, and control samples are dropped
unless keep_controls is set.  Sample ids that end up with nothing to export
are reported as a warning.

Usage:
    data = collect_export(conn, [12, 13])
    otu, tax, meta = build_tables(data, "microbiomeanalyst")
    write_archive(Path("export.zip"), "microbiomeanalyst", otu, tax, meta, data.warnings)
"""

from __future__ import annotations

import logging
import zipfile
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psycopg

from metag_etl.derived import patient_indicators, sample_indicators, timepoint_label
from metag_etl.shared import ExportError

log = logging.getLogger(__name__)

# format -> (otu header, metadata header, taxonomy header)
EXPORT_FORMATS: dict[str, tuple[str, str, str]] = {
    "microbiomeanalyst": ("#NAME", "#NAME", "#TAXONOMY"),
    "namco": ("Name", "Name", "Taxa"),
}

EXPORT_RANKS = ("domain", "phylum", "class", "order", "family", "genus", "species")
TAXONOMY_COLUMNS = ("Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species")

DEFAULT_BLACKLIST = ("FILTERED",)

PRIME_META = "z_score_category"

META_NAMES = frozenset({
    "antibiotics",
    "birth mode",
    "category of difference in body mass at delivery",
    "feeding mode",
    "maternal antibiotics during pregnancy",
    "maternal illness during pregnancy",
    "mother's age at delivery",
    "mother's pre-pregnancy BMI category",
    "pregnancy order",
    "probiotics",
    "sex",
    "z-score category",
    "z-score subcategory",
})


@dataclass
class ExportData:
    counts: dict[str, dict[str, int]] = field(default_factory=dict)
    metadata: dict[str, dict[str, str | None]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------

def parse_blacklist(value: str | None) -> tuple[str, ...]:
    """Split a comma-separated blacklist; 'NA' stands for UNMATCHED."""
    if not value:
        return ()
    names = [v.strip() for v in value.split(",") if v.strip()]
    return tuple("UNMATCHED" if n == "NA" else n for n in names)


def _meta_token(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).replace(" ", "_").replace("-", "_").replace("'", "")


def sample_metadata(conn: psycopg.Connection, sample_id: int, patient_id: int) -> dict[str, str | None]:
    """Patient- and sample-level metadata of one sample, as export tokens."""
    merged = patient_indicators(conn, patient_id)
    merged.update(sample_indicators(conn, sample_id))
    return {
        _meta_token(name): _meta_token(value)
        for name, value in merged.items()
        if name in META_NAMES
    }


def _lineage(names: dict[str, str | None]) -> str:
    return ";".join(names.get(rank) or "" for rank in EXPORT_RANKS)


def collect_export(
    conn: psycopg.Connection,
    sample_ids: list[int],
    blacklist: tuple[str, ...] = DEFAULT_BLACKLIST,
    keep_controls: bool = False,
) -> ExportData:
    """Count reads per lineage for each exported sample and gather metadata.

    Where a classification is linked to more than one taxon at a rank, the
    link written by the latest import run is used.
    """
    if not sample_ids:
        raise ExportError("No sample ids given")

    rows = conn.execute(
        """
        SELECT DISTINCT ON (c.id, tc.rank)
               s.id, s.id_patient, p.alias, p.birthdate, s.createdate, s.iscontrol,
               c.id, c.program, c.database, tc.rank, t.name
        FROM sample s
        JOIN patient p ON p.id = s.id_patient
        JOIN sequence q ON q.id_sample = s.id
        JOIN classification c ON c.id_sequence = q.id
        JOIN taxclass tc ON tc.id_classification = c.id
        JOIN taxonomy t ON t.id = tc.id_taxonomy
        WHERE s.id = ANY(%s)
        ORDER BY c.id, tc.rank, tc.id_run DESC, t.id DESC
        """,
        (list(sample_ids),),
    ).fetchall()

    # classification id -> (sample id, patient id, export name, metadata columns)
    owners: dict[int, tuple[int, int, str, dict[str, str | None]]] = {}
    lineages: dict[int, dict[str, str | None]] = defaultdict(dict)
    for (sid, pid, alias, birthdate, createdate, iscontrol,
         cid, program, database, rank, name) in rows:
        if iscontrol and not keep_controls:
            continue
        if cid not in owners:
            timepoint = timepoint_label(birthdate, createdate)
            export_name = "_".join([
                alias,
                timepoint,
                "t" if iscontrol else "f",
                program or "",
                database or "",
            ])
            columns = {
                "program": program,
                "database": database,
                "control": "yes" if iscontrol else "no",
                "timepoint": timepoint,
            }
            owners[cid] = (sid, pid, export_name, columns)
        lineages[cid][rank] = name

    data = ExportData()
    names_by_sample: dict[str, int] = {}
    for cid, (sid, pid, export_name, columns) in owners.items():
        lineage = lineages[cid]
        if lineage.get(EXPORT_RANKS[0]) in blacklist:
            continue
        if names_by_sample.setdefault(export_name, sid) != sid:
            raise ExportError(f"Sample name '{export_name}' is not unique")
        counts = data.counts.setdefault(export_name, {})
        key = _lineage(lineage)
        counts[key] = counts.get(key, 0) + 1
        if export_name not in data.metadata:
            meta = sample_metadata(conn, sid, pid)
            meta.update(columns)
            data.metadata[export_name] = meta

    removed = len(set(sample_ids) - set(names_by_sample.values()))
    if removed:
        data.warnings.append(f"WARNING: {removed} sample ID(s) were removed.")
        log.warning("%d of %d sample id(s) had nothing to export", removed, len(set(sample_ids)))
    return data


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

def otu_table(counts: dict[str, dict[str, int]], header: str) -> tuple[str, dict[str, str]]:
    """Return the OTU table and the OTU id -> lineage mapping."""
    samples = sorted(counts)
    lineages = sorted({lin for per_sample in counts.values() for lin in per_sample})
    lines = ["\t".join([header, *samples])]
    ids: dict[str, str] = {}
    for idx, lineage in enumerate(lineages):
        otu_id = f"OTU{idx}"
        ids[otu_id] = lineage
        lines.append("\t".join([otu_id, *(str(counts[s].get(lineage, 0)) for s in samples)]))
    return "\n".join(lines), ids


def taxonomy_table(ids: dict[str, str], header: str) -> str:
    lines = ["\t".join([header, *TAXONOMY_COLUMNS])]
    for otu_id in sorted(ids):
        names = ids[otu_id].split(";")
        cells = []
        for name in names[: len(TAXONOMY_COLUMNS)]:
            if not name:
                cells.append("NoName")
            elif name == "UNMATCHED":
                cells.append("NA")
            else:
                cells.append(name)
        lines.append("\t".join([otu_id, *cells]))
    return "\n".join(lines)


def metadata_table(metadata: dict[str, dict[str, str | None]], header: str) -> str:
    names = sorted({n for meta in metadata.values() for n in meta if n != PRIME_META})
    lines = ["\t".join([header, PRIME_META, *names])]
    for sample in sorted(metadata):
        meta = metadata[sample]
        cells = [meta.get(PRIME_META) or "NA", *(meta.get(n) or "NA" for n in names)]
        lines.append("\t".join([sample, *cells]))
    return "\n".join(lines)


def build_tables(data: ExportData, fmt: str) -> tuple[str, str, str]:
    """Render (otu, taxonomy, metadata) for a tool format; empty if nothing to export."""
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unknown format '{fmt}'")
    if not data.counts:
        return "", "", ""
    otu_header, meta_header, tax_header = EXPORT_FORMATS[fmt]
    otu, ids = otu_table(data.counts, otu_header)
    return otu, taxonomy_table(ids, tax_header), metadata_table(data.metadata, meta_header)


def write_archive(
    path: Path,
    fmt: str,
    otu: str,
    tax: str,
    meta: str,
    warnings: list[str] | None = None,
) -> Path:
    """Write the tables (and any warnings) to an uncompressed ZIP archive."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as archive:
        archive.writestr(f"{fmt}_otu.txt", otu)
        archive.writestr(f"{fmt}_tax.txt", tax)
        archive.writestr(f"{fmt}_meta.txt", meta)
        if warnings:
            archive.writestr(f"{fmt}_WARNINGS.txt", "\n".join(warnings))
    return path
