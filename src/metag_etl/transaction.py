"""metag_etl.transaction

Transaction/rollback controller for one batch.

The whole batch runs inside a single database transaction:

  OPEN         advisory lock taken, import_run row written
  COMMITTED    work finished, at least one row written, not a dry run
  ROLLED_BACK  a BatchError (or any other exception) was raised, the run was
               a dry run, or nothing changed

WARNING conditions are collected with warn() and do not stop the batch.
ERROR conditions are BatchError subclasses; the first one aborts the batch
and every write since OPEN is discarded.

Usage:
    with BatchTransaction(conn, run_id, source_path=str(path)) as tx:
        outcome = tx.execute(lambda tx: import_batch(tx, patients, ...))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import psycopg

from metag_etl.shared import BatchError, ConcurrentImportError, ImportCounters

log = logging.getLogger(__name__)

# Advisory lock key shared by every batch import ("metg").
BATCH_LOCK_KEY = 0x6D657467

OPEN = "open"
COMMITTED = "committed"
ROLLED_BACK = "rolled_back"

STATUS_COMMITTED = "committed"
STATUS_UNCHANGED = "unchanged"
STATUS_DRY_RUN = "dry_run"
STATUS_FAILED = "failed"


@dataclass
class BatchOutcome:
    run_id: str
    status: str
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    counters: ImportCounters = field(default_factory=ImportCounters)

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED


class BatchTransaction:
    """Single-transaction scope for one batch import."""

    def __init__(
        self,
        conn: psycopg.Connection,
        run_id: str,
        source_path: str | None = None,
        dry_run: bool = False,
        counters: ImportCounters | None = None,
    ) -> None:
        self.conn = conn
        self.run_id = run_id
        self.source_path = source_path
        self.dry_run = dry_run
        self.counters = counters or ImportCounters()
        self.state: str | None = None
        self.id_run: int | None = None

    def __enter__(self) -> BatchTransaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.state == OPEN:
            self._rollback()
        return False

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def open(self) -> int:
        """Take the batch lock and register the import run.

        Raises:
            ConcurrentImportError: If another import holds the lock.
        """
        if self.state is not None:
            raise RuntimeError(f"Transaction already {self.state}")
        locked = self.conn.execute(
            "SELECT pg_try_advisory_xact_lock(%s)", (BATCH_LOCK_KEY,)
        ).fetchone()[0]
        if not locked:
            self.conn.rollback()
            self.state = ROLLED_BACK
            raise ConcurrentImportError("Another batch import is running.")
        row = self.conn.execute(
            """
            INSERT INTO import_run (run_uuid, source_path)
            VALUES (%s, %s)
            RETURNING id
            """,
            (self.run_id, self.source_path),
        ).fetchone()
        self.id_run = int(row[0])
        self.state = OPEN
        log.debug("import run %s opened as id_run=%s", self.run_id, self.id_run)
        return self.id_run

    def _rollback(self) -> None:
        self.conn.rollback()
        self.state = ROLLED_BACK

    def _commit(self) -> None:
        self.conn.commit()
        self.state = COMMITTED

    def warn(self, message: str) -> None:
        log.warning("%s", message)
        self.counters.warnings.append(message)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, work: Callable[[BatchTransaction], None]) -> BatchOutcome:
        """Run work inside the transaction and commit or roll back.

        A BatchError becomes a 'failed' outcome.  Any other exception rolls
        back and propagates.
        """
        try:
            if self.state is None:
                self.open()
            work(self)
        except BatchError as exc:
            if self.state == OPEN:
                self._rollback()
            log.error("batch %s rolled back: %s", self.run_id, exc)
            return self._outcome(STATUS_FAILED, error=f"{type(exc).__name__}: {exc}")
        except Exception:
            if self.state == OPEN:
                self._rollback()
            raise

        if self.dry_run:
            self._rollback()
            return self._outcome(STATUS_DRY_RUN)
        if self.counters.writes == 0:
            self._rollback()
            return self._outcome(STATUS_UNCHANGED)
        self._commit()
        return self._outcome(STATUS_COMMITTED)

    def _outcome(self, status: str, error: str | None = None) -> BatchOutcome:
        return BatchOutcome(
            run_id=self.run_id,
            status=status,
            warnings=list(self.counters.warnings),
            error=error,
            counters=self.counters,
        )
