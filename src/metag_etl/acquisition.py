"""metag_etl.acquisition

External acquisition resources: locate sequencing and classification files
for one sequencing directory, and parse them.

Failure classes:
  ResourceNotFoundError   no (or no unique) directory matches: the caller
                          skips the unit with a warning
  ResourceFormatError     a file was found but is not valid FASTQ / MetaG,
                          or two files differ only by extension
  ResourceMismatchError   classification read ids missing from the FASTQ
"""

from __future__ import annotations

import bz2
import gzip
import os
import re
from dataclasses import dataclass
from pathlib import Path

from metag_etl.shared import (
    AmbiguousResourceError,
    ResourceFormatError,
    ResourceMismatchError,
    ResourceNotFoundError,
    UnknownClassifierError,
)

# Header metadata keys -> FastqRead attribute
FASTQ_METADATA = {
    "runid": "runid",
    "barcode": "barcode",
    "flow_cell_id": "flowcellid",
    "basecall_model_version_id": "callermodel",
}

UNMATCHED = "UNMATCHED"
FILTERED = "FILTERED"

_EXTENSIONS = re.compile(r"^(.+?)(\.[A-Za-z0-9]+)+$")


@dataclass
class FastqRead:
    readid: str
    nucs: str
    quality: str
    runid: str | None = None
    barcode: str | None = None
    flowcellid: str | None = None
    callermodel: str | None = None


# ---------------------------------------------------------------------------
# File lookup
# ---------------------------------------------------------------------------

def find_files(base_dir: Path, dir_pattern: str, file_pattern: str) -> list[Path]:
    """Return the sorted files matching file_pattern in the one directory
    whose path ends with dir_pattern.

    macOS resource forks ('._*') are ignored.  Two files in the matched
    directory that differ only by extension (a.fastq.gz, a.fastq) are
    rejected as probable duplicates.

    Raises:
        ResourceNotFoundError: Nothing matches.
        AmbiguousResourceError: More than one directory matches.
        ResourceFormatError: Duplicate basenames were found.
    """
    dir_re = re.compile(dir_pattern + "$")
    file_re = re.compile(file_pattern)
    files: list[Path] = []
    dirs: set[str] = set()
    basenames: set[str] = set()

    for dirpath, _dirnames, filenames in os.walk(base_dir):
        if not dir_re.search(dirpath):
            continue
        for name in filenames:
            full = os.path.join(dirpath, name)
            if name.startswith("._") or not file_re.search(full):
                continue
            m = _EXTENSIONS.match(name)
            stem = os.path.join(dirpath, m.group(1) if m else name)
            if stem in basenames:
                raise ResourceFormatError(
                    f"Found possible duplicate with different extension '{stem}'"
                )
            basenames.add(stem)
            files.append(Path(full))
            dirs.add(dirpath)

    if len(dirs) > 1:
        raise AmbiguousResourceError(
            f"Directory pattern '{dir_pattern}' too unspecific. Matches: "
            + "; ".join(sorted(dirs))
        )
    if not files:
        raise ResourceNotFoundError(
            f"No results for directory pattern '{dir_pattern}' and file pattern '{file_pattern}'"
        )
    return sorted(files)


def read_text(path: Path) -> str:
    """Read a file, transparently decompressing .gz and .bz2."""
    if path.suffix == ".gz":
        with gzip.open(path, "rt", encoding="utf-8") as fh:
            return fh.read()
    if path.suffix == ".bz2":
        with bz2.open(path, "rt", encoding="utf-8") as fh:
            return fh.read()
    return path.read_text(encoding="utf-8")


def read_all(paths: list[Path]) -> str:
    parts = [read_text(p) for p in paths]
    return "\n".join(p.rstrip("\r\n") for p in parts if p.strip())


# ---------------------------------------------------------------------------
# FASTQ
# ---------------------------------------------------------------------------

def parse_fastq(text: str) -> dict[str, FastqRead]:
    """Parse 4-line FASTQ records keyed by read id.

    Header metadata is read from 'key=value' tokens after the read id; only
    the keys in FASTQ_METADATA are kept.
    """
    lines = text.splitlines()
    if not lines or len(lines) % 4 != 0:
        raise ResourceFormatError(f"Invalid FASTQ: {len(lines)} lines")

    reads: dict[str, FastqRead] = {}
    for i in range(0, len(lines), 4):
        header, nucs, spacer, quality = lines[i:i + 4]
        tokens = header.split()
        if not tokens or not tokens[0].startswith("@") or len(tokens[0]) < 2:
            raise ResourceFormatError(f"Invalid FASTQ header {header!r}")
        if not spacer.startswith("+"):
            raise ResourceFormatError(f"Invalid FASTQ format near {header!r}")
        if len(nucs) != len(quality):
            raise ResourceFormatError(
                f"Sequence and quality lengths differ for {tokens[0]!r}"
            )
        if any(not 33 <= ord(c) <= 126 for c in quality):
            raise ResourceFormatError(f"Invalid quality encoding for {tokens[0]!r}")

        read = FastqRead(readid=tokens[0][1:], nucs=nucs, quality=quality)
        for token in tokens[1:]:
            k, sep, v = token.partition("=")
            if sep and k in FASTQ_METADATA:
                setattr(read, FASTQ_METADATA[k], v)
        if read.readid in reads:
            raise ResourceFormatError(f"Read {read.readid!r} appears twice")
        reads[read.readid] = read
    return reads


# ---------------------------------------------------------------------------
# Classification files
# ---------------------------------------------------------------------------

def classifier_pattern(program: str, classifiers: dict[str, str]) -> str:
    """Return the file pattern for a classification program."""
    for name, pattern in classifiers.items():
        if re.search(name, program, re.IGNORECASE):
            return pattern
    raise UnknownClassifierError(f"Unknown classifier '{program}'")


def parse_metag(text: str, ranks: list[str]) -> dict[str, dict[str, str | None]]:
    """Parse a MetaG lineage file (calc.LIN.txt).

    Format:
        >read_id
        domain: Bacteria: 12(12)
        phylum: unclassified: 3(3)
        No match for read_id

    'unclassified' maps to None.  Ranks missing at the end of a lineage, and
    every rank of an unmatched read, get the UNMATCHED taxon.
    """
    result: dict[str, dict[str, str | None]] = {}
    read_id: str | None = None

    def close(rid: str | None) -> None:
        if rid is None:
            return
        lineage = result[rid]
        for rank in ranks:
            lineage.setdefault(rank, UNMATCHED)

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith(">"):
            close(read_id)
            read_id = line[1:].strip()
            if not read_id:
                raise ResourceFormatError("Empty read id in classification file")
            if read_id in result:
                raise ResourceFormatError(f"Read {read_id!r} has been classified twice")
            result[read_id] = {}
        elif line.startswith("No matches for"):
            raise ResourceFormatError(f"Statement {line!r} should not appear in classification file")
        elif line.startswith("No match for"):
            close(read_id)
            m = re.match(r"No match for ([A-Za-z0-9\-_]+)", line)
            if m is None:
                raise ResourceFormatError("No read id for unclassified read")
            read_id = m.group(1)
            if read_id in result:
                raise ResourceFormatError(f"Read {read_id!r} has been classified twice")
            result[read_id] = {rank: UNMATCHED for rank in ranks}
        else:
            if read_id is None:
                raise ResourceFormatError("No read id for classification")
            lineage = result[read_id]
            if len(lineage) >= len(ranks):
                raise ResourceFormatError(f"Too few ranks configured for read {read_id!r}")
            parts = line.split(": ")
            if len(parts) < 2:
                raise ResourceFormatError(f"Malformed lineage line {line!r}")
            expected = ranks[len(lineage)]
            if parts[0] != expected:
                raise ResourceFormatError(
                    f"Rank '{parts[0]}' does not match expected rank '{expected}' "
                    f"for read {read_id!r}"
                )
            lineage[expected] = None if parts[1] == "unclassified" else parts[1]
    close(read_id)
    return result


def assign_taxa(
    read_ids: list[str],
    taxa: dict[str, dict[str, str | None]],
    ranks: list[str],
    dir_pattern: str,
) -> dict[str, dict[str, str | None]]:
    """Pair FASTQ reads with their lineages.

    Reads absent from the classification were filtered by the classifier and
    get the FILTERED taxon at every rank.  Classified reads absent from the
    FASTQ mean the two files do not belong together.

    Raises:
        ResourceMismatchError: If any classified read id is not in read_ids.
    """
    known = set(read_ids)
    unmatched = [rid for rid in taxa if rid not in known]
    if unmatched:
        raise ResourceMismatchError(
            f"{len(unmatched)} read ID(s) do not match between taxonomy file and "
            f"FASTQ for directory pattern '{dir_pattern}'"
        )
    return {
        rid: taxa.get(rid) or {rank: FILTERED for rank in ranks}
        for rid in read_ids
    }
