"""Integration tests for sequencing units: FASTQ reads, classifications,
taxonomy links and control read replication.
"""

from __future__ import annotations

import csv

import pytest

from conftest import R1_LIN, fastq_text, seq_row, write_batch, write_unit
from metag_etl.pipeline import run_batch_import
from metag_etl.shared import SkipWriter

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

P1 = seq_row("P1", "H1", "run1/bar01")
P2 = seq_row("P2", "H2", "run1/bar02")


def _import(conn, layout, catalog, tmp_path, data_dir, rows, run_id, **kwargs):
    path = write_batch(tmp_path / f"{run_id}.csv", rows)
    return run_batch_import(conn, path, layout, catalog, run_id, data_dir=data_dir, **kwargs)


def _count(conn, table, where="TRUE", params=()):
    return conn.execute(f"SELECT count(*) FROM {table} WHERE {where}", params).fetchone()[0]


def _sample(conn, alias, iscontrol):
    return conn.execute(
        """
        SELECT s.id FROM sample s JOIN patient p ON p.id = s.id_patient
        WHERE p.alias = %s AND s.iscontrol = %s
        """,
        (alias, iscontrol),
    ).fetchone()[0]


# ---------------------------------------------------------------------------
# Test: reads, classifications and controls
# ---------------------------------------------------------------------------

class TestSequencingImport:
    def test_reads_and_controls_stored_once(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-1")
        assert outcome.status == "committed", outcome.error
        assert outcome.warnings == []

        assert _count(conn, "sample", "NOT iscontrol") == 2
        assert _count(conn, "sample", "iscontrol") == 2
        assert _count(conn, "sequence") == 4
        control_reads = _count(
            conn, "sequence q JOIN sample s ON s.id = q.id_sample", "s.iscontrol"
        )
        assert control_reads == 1

        owner = _sample(conn, "P1", True)
        links = conn.execute(
            "SELECT id_sample, id_control_sample, dir_pattern FROM sample_control ORDER BY id_sample"
        ).fetchall()
        assert links == [
            (_sample(conn, "P1", False), owner, "run1/bar99"),
            (_sample(conn, "P2", False), owner, "run1/bar99"),
        ]

    def test_classifications_and_taxa(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-1")

        assert _count(conn, "classification") == 4
        assert _count(conn, "taxclass") == 8
        taxa = set(conn.execute("SELECT name, rank FROM taxonomy").fetchall())
        assert taxa == {
            ("Bacteria", "domain"),
            ("Firmicutes", "phylum"),
            ("FILTERED", "domain"),
            ("FILTERED", "phylum"),
            ("UNMATCHED", "domain"),
            ("UNMATCHED", "phylum"),
            (None, "phylum"),
        }
        r2_taxa = conn.execute(
            """
            SELECT t.name FROM taxclass tc
            JOIN taxonomy t ON t.id = tc.id_taxonomy
            JOIN classification c ON c.id = tc.id_classification
            JOIN sequence q ON q.id = c.id_sequence
            WHERE q.readid = 'r2'
            """
        ).fetchall()
        assert {r[0] for r in r2_taxa} == {"FILTERED"}

    def test_sequence_metrics_generated(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1")
        seqlen, seqerr, runid, barcode, flowcell = conn.execute(
            "SELECT seqlen, seqerr, runid, barcode, flowcellid FROM sequence WHERE readid = 'r1'"
        ).fetchone()
        assert seqlen == 4
        assert float(seqerr) == pytest.approx(1e-4)
        assert (runid, barcode, flowcell) == ("run1", "barcode01", "FAK1")

    def test_reimport_is_noop(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-1")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-2")
        assert outcome.status == "unchanged"
        assert outcome.counters.sequences_unchanged == 4
        assert _count(conn, "sequence") == 4
        assert _count(conn, "sample_control") == 2

    def test_later_batch_reuses_stored_control(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1")
        owner = _sample(conn, "P1", True)
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P2], "run-2")
        assert outcome.status == "committed", outcome.error
        assert outcome.counters.control_links_inserted == 1

        control_reads = _count(
            conn, "sequence q JOIN sample s ON s.id = q.id_sample", "s.iscontrol"
        )
        assert control_reads == 1
        assert _count(conn, "sample_control", "id_control_sample = %s", (owner,)) == 2

    def test_taxclass_links_only_grow(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1")
        (data_dir / "run1/bar01/reads.calc.LIN.txt").write_text(
            ">r1\ndomain: Bacteria: 5(5)\nphylum: Bacillota: 5(5)\n", encoding="utf-8"
        )
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-2")
        assert outcome.status == "committed", outcome.error
        assert outcome.counters.taxclass_links_inserted == 1

        names = {r[0] for r in conn.execute(
            """
            SELECT t.name FROM taxclass tc
            JOIN taxonomy t ON t.id = tc.id_taxonomy
            JOIN classification c ON c.id = tc.id_classification
            JOIN sequence q ON q.id = c.id_sequence
            WHERE q.readid = 'r1'
            """
        ).fetchall()}
        assert names == {"Bacteria", "Firmicutes", "Bacillota"}


# ---------------------------------------------------------------------------
# Test: warnings and errors
# ---------------------------------------------------------------------------

class TestSequencingFailures:
    def test_missing_fastq_is_warning(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        skips_path = tmp_path / "skips.csv"
        skips = SkipWriter(skips_path)
        p3 = seq_row("P3", "H3", "run1/bar05")
        outcome = _import(
            conn, seq_layout, catalog, tmp_path, data_dir, [P1, p3], "run-1", skips=skips
        )
        skips.close()

        assert outcome.status == "committed", outcome.error
        assert outcome.counters.units_skipped == 1
        assert any("run1/bar05" in w for w in outcome.warnings)
        assert _count(conn, "sample", "NOT iscontrol") == 2
        assert _count(conn, "sequence") == 3

        with open(skips_path, encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows[0]["dir_pattern"] == "run1/bar05"
        assert "FASTQ" in rows[0]["_skip_reason"]

    def test_missing_data_dir_is_warning(self, seeded_conn, seq_layout, catalog, tmp_path):
        conn, _ = seeded_conn
        outcome = _import(conn, seq_layout, catalog, tmp_path, None, [P1], "run-1")
        assert outcome.status == "committed"
        assert outcome.warnings
        assert _count(conn, "sequence") == 0

    def test_read_mismatch_fails(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        (data_dir / "run1/bar01/reads.calc.LIN.txt").write_text(
            R1_LIN + ">r9\ndomain: Bacteria: 1(1)\n", encoding="utf-8"
        )
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-1")
        assert outcome.status == "failed"
        assert "ResourceMismatchError" in outcome.error
        assert "1 read ID(s) do not match" in outcome.error
        assert _count(conn, "patient") == 0

    def test_unknown_classifier_fails(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        row = seq_row("P1", "H1", "run1/bar01", program="kraken")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [row], "run-1")
        assert outcome.status == "failed"
        assert "UnknownClassifierError" in outcome.error

    def test_shared_directory_fails(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        p2 = seq_row("P2", "H2", "run1/bar01")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, p2], "run-1")
        assert outcome.status == "failed"
        assert "IdentityConflictError" in outcome.error
        assert _count(conn, "sample") == 0

    def test_corrupt_fastq_fails(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        (data_dir / "run1/bar02/reads.fastq").write_text("@r3\nGGCC\n+\n", encoding="utf-8")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-1")
        assert outcome.status == "failed"
        assert "ResourceFormatError" in outcome.error


# ---------------------------------------------------------------------------
# Test: control replication scope
# ---------------------------------------------------------------------------

class TestControlScope:
    @pytest.fixture
    def with_extra(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        """P9 sequenced in run1 from a directory without a barcode segment."""
        conn, _ = seeded_conn
        write_unit(data_dir, "run1/extra", fastq_text([("x1", "barcode07", "AAAA")]))
        row = seq_row("P9", "H9", "run1/extra", program="")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [row], "run-0")
        assert outcome.status == "committed", outcome.error
        assert _count(conn, "sample", "iscontrol") == 0
        return conn

    def test_run_barcode_scope_ignores_other_samples(self, with_extra, seq_layout, catalog, tmp_path, data_dir):
        conn = with_extra
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1")
        p9 = _sample(conn, "P9", False)
        assert _count(conn, "sample_control", "id_sample = %s", (p9,)) == 0

    def test_run_scope_links_samples_of_same_run(self, with_extra, seq_layout, catalog, tmp_path, data_dir):
        conn = with_extra
        outcome = _import(
            conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1", control_scope="run"
        )
        assert outcome.status == "committed", outcome.error
        p9 = _sample(conn, "P9", False)
        owner = _sample(conn, "P1", True)
        assert _count(
            conn, "sample_control", "id_sample = %s AND id_control_sample = %s", (p9, owner)
        ) == 1


# ---------------------------------------------------------------------------
# Test: empty files, missing programs and per-database control classification
# ---------------------------------------------------------------------------

class TestAcquisitionWarnings:
    @pytest.mark.parametrize("content", ["", "\n  \n"])
    def test_empty_control_fastq_is_warning(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir, content):
        conn, _ = seeded_conn
        (data_dir / "run1/bar99/reads.fastq").write_text(content, encoding="utf-8")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-1")
        assert outcome.status == "committed", outcome.error
        assert outcome.counters.units_skipped == 1
        assert any("run1/bar99" in w and "no reads" in w for w in outcome.warnings)
        assert _count(conn, "sequence") == 3
        assert _count(conn, "sample_control") == 2

    def test_missing_program_is_warning(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        row = seq_row("P1", "H1", "run1/bar01", program="")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [row], "run-1")
        assert outcome.status == "committed", outcome.error
        assert any("No program given for 'run1/bar01'" in w for w in outcome.warnings)
        assert _count(conn, "sequence") == 3
        assert _count(conn, "classification") == 0

    def test_missing_classification_keeps_reads(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        (data_dir / "run1/bar02/reads.calc.LIN.txt").unlink()
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, P2], "run-1")
        assert outcome.status == "committed", outcome.error
        assert outcome.counters.units_skipped == 0
        assert outcome.counters.classifications_skipped == 1
        assert _count(conn, "sequence") == 4
        assert _count(conn, "classification") == 3

    def test_shared_control_classified_per_database(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        p2 = seq_row("P2", "H2", "run1/bar02", database="db2")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1, p2], "run-1")
        assert outcome.status == "committed", outcome.error
        control_dbs = conn.execute(
            """
            SELECT c.database FROM classification c
            JOIN sequence q ON q.id = c.id_sequence
            WHERE q.readid = 'c1'
            ORDER BY 1
            """
        ).fetchall()
        assert control_dbs == [("db1",), ("db2",)]
        assert _count(conn, "classification") == 5


# ---------------------------------------------------------------------------
# Test: identity changes and versions below the patient
# ---------------------------------------------------------------------------

class TestSequencingIdentity:
    def test_changed_run_header_adds_sequence(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1")
        write_unit(
            data_dir, "run1/bar01",
            fastq_text([("r1", "barcode01", "ACGT"), ("r2", "barcode01", "ACG")], runid="run2"),
        )
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-2")
        assert outcome.status == "committed", outcome.error
        assert outcome.counters.sequences_inserted == 2
        rows = conn.execute(
            "SELECT runid, version FROM sequence WHERE readid = 'r1' ORDER BY runid"
        ).fetchall()
        assert rows == [("run1", 1), ("run2", 1)]

    def test_changed_flowcell_updates_in_place(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1")
        before = conn.execute("SELECT id FROM sequence WHERE readid = 'r1'").fetchone()[0]
        write_unit(
            data_dir, "run1/bar01",
            fastq_text([("r1", "barcode01", "ACGT"), ("r2", "barcode01", "ACG")], flowcell="FAK2"),
        )
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-2")
        assert outcome.status == "committed", outcome.error
        assert outcome.counters.sequences_updated == 2
        assert outcome.counters.sequences_inserted == 0
        rows = conn.execute(
            "SELECT id, flowcellid, version FROM sequence WHERE readid = 'r1'"
        ).fetchall()
        assert rows == [(before, "FAK2", 2)]

    def test_changed_database_adds_classification(self, seeded_conn, seq_layout, catalog, tmp_path, data_dir):
        conn, _ = seeded_conn
        _import(conn, seq_layout, catalog, tmp_path, data_dir, [P1], "run-1")
        moved = seq_row("P1", "H1", "run1/bar01", database="db2")
        outcome = _import(conn, seq_layout, catalog, tmp_path, data_dir, [moved], "run-2")
        assert outcome.status == "committed", outcome.error
        rows = conn.execute(
            """
            SELECT c.database, c.version FROM classification c
            JOIN sequence q ON q.id = c.id_sequence
            WHERE q.readid = 'r1'
            ORDER BY 1
            """
        ).fetchall()
        assert rows == [("db1", 1), ("db2", 1)]
        assert _count(conn, "sequence") == 3
