"""metag_etl.settings

YAML-based configuration for batch imports.

Responsibilities:
  - Load and validate the batch table layout (config/import_layout.yml)
  - Load and validate the measurement type catalogue
    (config/measurement_types.yml)
  - Hash YAML content for traceability in run reports

Usage:
    from metag_etl.settings import load_layout, load_type_catalog

    layout = load_layout(Path("config/import_layout.yml"))
    catalog = load_type_catalog(Path("config/measurement_types.yml"))
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"
DEFAULT_LAYOUT_PATH = DEFAULT_CONFIG_DIR / "import_layout.yml"
DEFAULT_TYPES_PATH = DEFAULT_CONFIG_DIR / "measurement_types.yml"

REQUIRED_LAYOUT_KEYS = frozenset({
    "columns", "static", "measurement", "sequencing", "classifiers", "ranks",
})

REQUIRED_COLUMN_KEYS = frozenset({"id", "timepoint", "accession", "birthdate"})

REQUIRED_SEQUENCING_KEYS = frozenset({
    "dir_column", "program_column", "database_column",
    "fastq_pattern", "control_barcode",
})

VALID_CONTROL_SCOPES = ("run_barcode", "run")

VALID_CATEGORIES = frozenset({"i", "s", "d", "b"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LayoutValidationError(ValueError):
    """Raised when a YAML configuration file fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class ImportLayout:
    """Parsed, validated batch table layout."""

    id_column: str
    timepoint_column: str
    accession_column: str
    birthdate_column: str
    createdby_column: str | None
    static_columns: list[str]
    measurement_columns: list[str]
    date_columns: list[str]
    dir_column: str
    program_column: str
    database_column: str
    fastq_pattern: str
    control_barcode: str
    control_scope: str
    classifiers: dict[str, str]
    ranks: list[str]
    yaml_hash: str = ""

    @property
    def sequencing_columns(self) -> frozenset[str]:
        return frozenset({self.dir_column, self.program_column, self.database_column})

    @property
    def key_columns(self) -> frozenset[str]:
        return frozenset({self.accession_column, self.birthdate_column})


@dataclass
class MeasurementType:
    name: str
    category: str
    selection: list[str] | None = None
    is_static: bool = False
    codes: dict[str, str] = field(default_factory=dict)
    unit: str | None = None


@dataclass
class TypeCatalog:
    types: dict[str, MeasurementType]
    yaml_hash: str = ""

    def __contains__(self, name: str) -> bool:
        return name in self.types

    def get(self, name: str) -> MeasurementType | None:
        return self.types.get(name)

    @property
    def static_names(self) -> frozenset[str]:
        return frozenset(n for n, t in self.types.items() if t.is_static)


# ---------------------------------------------------------------------------
# Layout loader + validator
# ---------------------------------------------------------------------------

def load_layout(yaml_path: Path | None = None) -> ImportLayout:
    """Load, validate, and return the batch table layout.

    Raises:
        LayoutValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_LAYOUT_PATH
    raw = path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_layout(data)
    columns = data["columns"]
    seq = data["sequencing"]
    return ImportLayout(
        id_column=str(columns["id"]),
        timepoint_column=str(columns["timepoint"]),
        accession_column=str(columns["accession"]),
        birthdate_column=str(columns["birthdate"]),
        createdby_column=columns.get("createdby"),
        static_columns=[str(c) for c in data["static"]],
        measurement_columns=[str(c) for c in data["measurement"]],
        date_columns=[str(c) for c in data.get("date_columns") or []],
        dir_column=str(seq["dir_column"]),
        program_column=str(seq["program_column"]),
        database_column=str(seq["database_column"]),
        fastq_pattern=str(seq["fastq_pattern"]),
        control_barcode=str(seq["control_barcode"]),
        control_scope=str(seq.get("control_scope") or "run_barcode"),
        classifiers={str(k): str(v) for k, v in data["classifiers"].items()},
        ranks=[str(r) for r in data["ranks"]],
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_layout(data: dict[str, Any]) -> None:
    """Raise LayoutValidationError if data does not match the layout schema.

    Validates:
      - Required top-level, column and sequencing keys present
      - No column listed as both static and time-dependent
      - Patient key columns listed among the statics
      - control_scope is one of the supported values
      - ranks non-empty and unique
    """
    if not isinstance(data, dict):
        raise LayoutValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_LAYOUT_KEYS - set(data.keys())
    if missing_keys:
        raise LayoutValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    columns = data.get("columns") or {}
    missing_cols = REQUIRED_COLUMN_KEYS - set(columns.keys())
    if missing_cols:
        raise LayoutValidationError(f"Missing column keys: {sorted(missing_cols)}")

    static = list(data.get("static") or [])
    measurement = list(data.get("measurement") or [])
    clash = set(static) & set(measurement)
    if clash:
        raise LayoutValidationError(
            f"Static measurement and time-dependent measurement have the same name: {sorted(clash)}"
        )
    if "_times_" in static:
        raise LayoutValidationError("Illegal static name '_times_'.")
    for key in ("accession", "birthdate"):
        if columns[key] not in static:
            raise LayoutValidationError(
                f"Patient key column '{columns[key]}' must be listed under 'static'."
            )

    seq = data.get("sequencing") or {}
    missing_seq = REQUIRED_SEQUENCING_KEYS - set(seq.keys())
    if missing_seq:
        raise LayoutValidationError(f"Missing sequencing keys: {sorted(missing_seq)}")
    for key in ("dir_column", "program_column", "database_column"):
        if seq[key] not in measurement:
            raise LayoutValidationError(
                f"Sequencing column '{seq[key]}' must be listed under 'measurement'."
            )
    scope = seq.get("control_scope") or "run_barcode"
    if scope not in VALID_CONTROL_SCOPES:
        raise LayoutValidationError(
            f"Invalid control_scope '{scope}'. Must be one of {list(VALID_CONTROL_SCOPES)}."
        )

    classifiers = data.get("classifiers") or {}
    if not isinstance(classifiers, dict) or not classifiers:
        raise LayoutValidationError("'classifiers' must be a non-empty mapping.")

    ranks = list(data.get("ranks") or [])
    if not ranks:
        raise LayoutValidationError("'ranks' must not be empty.")
    if len(set(ranks)) != len(ranks):
        raise LayoutValidationError("'ranks' must not contain duplicates.")


# ---------------------------------------------------------------------------
# Type catalogue
# ---------------------------------------------------------------------------

def load_type_catalog(yaml_path: Path | None = None) -> TypeCatalog:
    """Load and validate the measurement type catalogue."""
    path = yaml_path or DEFAULT_TYPES_PATH
    raw = path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_type_catalog(data)
    types: dict[str, MeasurementType] = {}
    for entry in data["types"]:
        selection = entry.get("selection")
        types[entry["name"]] = MeasurementType(
            name=str(entry["name"]),
            category=str(entry["category"]),
            selection=[str(s) for s in selection] if selection else None,
            is_static=bool(entry.get("static", False)),
            codes={str(k): str(v) for k, v in (entry.get("codes") or {}).items()},
            unit=entry.get("unit"),
        )
    return TypeCatalog(
        types=types,
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_type_catalog(data: dict[str, Any]) -> None:
    """Raise LayoutValidationError if the type catalogue is malformed."""
    if not isinstance(data, dict) or not isinstance(data.get("types"), list):
        raise LayoutValidationError("Type catalogue must be a mapping with a 'types' list.")

    seen: set[str] = set()
    for entry in data["types"]:
        name = entry.get("name") if isinstance(entry, dict) else None
        if not name:
            raise LayoutValidationError(f"Type entry without a name: {entry!r}")
        if name in seen:
            raise LayoutValidationError(f"Duplicate type name '{name}'.")
        seen.add(name)
        category = entry.get("category")
        if category not in VALID_CATEGORIES:
            raise LayoutValidationError(
                f"Type '{name}' has invalid category '{category}'. "
                f"Must be one of {sorted(VALID_CATEGORIES)}."
            )
        selection = [str(s) for s in entry.get("selection") or []]
        for code, term in (entry.get("codes") or {}).items():
            if selection and str(term) not in selection:
                raise LayoutValidationError(
                    f"Type '{name}': code {code!r} maps to '{term}', which is not in its selection."
                )
