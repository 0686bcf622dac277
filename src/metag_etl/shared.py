"""metag_etl.shared

Shared utilities used by the batch import and reference seeding modes.
Includes the exception hierarchy, SkipWriter, ImportCounters, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BatchError(Exception):
    """Fatal condition: the whole batch is rolled back."""


class IdentityConflictError(BatchError):
    """An identity-defining combination resolves to an invalid state."""


class MissingAnchorError(BatchError):
    """A record lacks the fields needed to form its natural key."""


class ResourceMismatchError(BatchError):
    """Co-dependent acquisition resources disagree for one unit of work."""


class ResourceFormatError(BatchError):
    """An acquisition file was found but could not be parsed."""


class UnknownClassifierError(BatchError):
    """The classification program named in the batch is not supported."""


class StaticMeasurementError(BatchError):
    """A static measurement is attached anywhere but the first sample."""


class TableFormatError(BatchError):
    """The batch table is structurally invalid or self-contradictory."""


class ConcurrentImportError(BatchError):
    """Another import holds the batch lock."""


class ResourceNotFoundError(Exception):
    """Acquisition files for one unit cannot be located (recoverable)."""


class AmbiguousResourceError(ResourceNotFoundError):
    """A directory pattern matches more than one location."""


class ExportError(Exception):
    """An export request cannot be served from the stored data."""


# ---------------------------------------------------------------------------
# SkipWriter
# ---------------------------------------------------------------------------

class SkipWriter:
    """Lazy-open CSV writer for acquisition units skipped with a warning."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_skip_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_skip_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

# entity_type -> counter prefix
_COUNTER_PREFIX = {
    "patient": "patients",
    "sample": "samples",
    "measurement": "measurements",
    "sequence": "sequences",
    "classification": "classifications",
    "taxonomy": "taxa",
}


@dataclass
class ImportCounters:
    rows_read: int = 0
    patients_read: int = 0
    patients_inserted: int = 0
    patients_updated: int = 0
    patients_unchanged: int = 0
    patient_identity_changes: int = 0
    samples_inserted: int = 0
    samples_updated: int = 0
    samples_unchanged: int = 0
    measurements_inserted: int = 0
    measurements_updated: int = 0
    measurements_unchanged: int = 0
    deletions_refused: int = 0
    sequences_inserted: int = 0
    sequences_updated: int = 0
    sequences_unchanged: int = 0
    classifications_inserted: int = 0
    classifications_updated: int = 0
    classifications_unchanged: int = 0
    taxa_inserted: int = 0
    taxa_updated: int = 0
    taxa_unchanged: int = 0
    taxclass_links_inserted: int = 0
    control_links_inserted: int = 0
    units_skipped: int = 0
    classifications_skipped: int = 0
    warnings: list[str] = field(default_factory=list)

    def tally(self, entity_type: str, action: str) -> None:
        """Increment the counter for one upsert outcome, e.g. ('sample', 'inserted')."""
        name = f"{_COUNTER_PREFIX[entity_type]}_{action}"
        setattr(self, name, getattr(self, name) + 1)

    @property
    def writes(self) -> int:
        """Rows inserted or updated in business tables."""
        total = self.patient_identity_changes
        total += self.taxclass_links_inserted + self.control_links_inserted
        for prefix in _COUNTER_PREFIX.values():
            total += getattr(self, f"{prefix}_inserted") + getattr(self, f"{prefix}_updated")
        return total

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            k: v for k, v in self.__dict__.items() if k != "warnings"
        }
        out["writes"] = self.writes
        out["warnings"] = self.warnings[:50]
        return out


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: ImportCounters,
    status: str | None = None,
    error: str | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        "status": status,
        "error": error,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
