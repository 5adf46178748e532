"""
Dedupe Store

Durable record of processed message ids, guaranteeing at most one
``written`` outcome per id.

Protocol:
    reservation = await store.check_and_reserve(event_id)
    if reservation.proceed:
        ... write ...
        await store.commit(event_id, Outcome.WRITTEN, target_path)

check_and_reserve inserts a ``pending`` row (or re-arms a ``failed`` one) in a
single SQLite IMMEDIATE transaction, so the reservation is an atomic
conditional insert even across processes. Within one process, calls for the
same id are additionally serialized by a per-key asyncio lock; distinct ids
never wait on each other. The lock is released as soon as the reservation or
commit is recorded, never held across the write itself.

A ``pending`` row older than ``reservation_ttl`` belongs to a run that died
without committing and may be taken over.
"""

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager, closing, contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional, Union

from ..common.schemas import DedupeRecord, Outcome, Reservation, utcnow

logger = logging.getLogger("courier.pipeline.dedupe")

SCHEMA = """
CREATE TABLE IF NOT EXISTS dedupe_records (
    event_id        TEXT PRIMARY KEY,
    outcome         TEXT NOT NULL,
    target_location TEXT,
    processed_at    TEXT NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 1
)
"""


class _KeyedLocks:
    """asyncio locks created on demand per key and dropped when unused"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@contextmanager
def _immediate(conn: sqlite3.Connection):
    """BEGIN IMMEDIATE ... COMMIT, rolled back on any error"""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def _row_to_record(row: sqlite3.Row) -> DedupeRecord:
    return DedupeRecord(
        event_id=row["event_id"],
        outcome=Outcome(row["outcome"]),
        target_location=row["target_location"],
        processed_at=datetime.fromisoformat(row["processed_at"]),
        attempts=row["attempts"],
    )


class DedupeStore:
    """
    SQLite-backed dedupe store.

    Usage:
        store = DedupeStore("~/.courier/dedupe.sqlite3")
        reservation = await store.check_and_reserve("C123:1706799600.1234")
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        reservation_ttl: float = 300.0,
        busy_timeout: float = 10.0,
    ):
        self._db_path = str(Path(db_path).expanduser())
        self._reservation_ttl = timedelta(seconds=reservation_ttl)
        self._busy_timeout = busy_timeout
        self._locks = _KeyedLocks()
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.execute(SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    # -------------------------------------------------------------------------
    # Blocking primitives (run in a worker thread)
    # -------------------------------------------------------------------------

    @staticmethod
    def _select(conn: sqlite3.Connection, event_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM dedupe_records WHERE event_id = ?", (event_id,)
        ).fetchone()

    def _reserve_sync(self, event_id: str, now: datetime) -> Reservation:
        with closing(self._connect()) as conn, _immediate(conn):
            row = self._select(conn, event_id)
            if row is None:
                conn.execute(
                    "INSERT INTO dedupe_records (event_id, outcome, processed_at, attempts) "
                    "VALUES (?, ?, ?, 1)",
                    (event_id, Outcome.PENDING.value, now.isoformat()),
                )
                return Reservation(proceed=True, prior=None)

            prior = _row_to_record(row)
            stale = (
                prior.outcome == Outcome.PENDING
                and now - prior.processed_at > self._reservation_ttl
            )
            if prior.outcome == Outcome.FAILED or stale:
                conn.execute(
                    "UPDATE dedupe_records SET outcome = ?, processed_at = ?, attempts = attempts + 1 "
                    "WHERE event_id = ?",
                    (Outcome.PENDING.value, now.isoformat(), event_id),
                )
                return Reservation(proceed=True, prior=prior)

            return Reservation(proceed=False, prior=prior)

    def _commit_sync(
        self,
        event_id: str,
        outcome: Outcome,
        target_location: Optional[str],
        now: datetime,
    ) -> DedupeRecord:
        with closing(self._connect()) as conn, _immediate(conn):
            row = self._select(conn, event_id)
            if row is not None and row["outcome"] == Outcome.WRITTEN.value:
                # written is final; a late commit never overrides it
                if outcome != Outcome.WRITTEN:
                    logger.warning(
                        "Ignoring %s commit for %s: already written", outcome.value, event_id,
                    )
                return _row_to_record(row)

            if row is None:
                conn.execute(
                    "INSERT INTO dedupe_records (event_id, outcome, target_location, processed_at, attempts) "
                    "VALUES (?, ?, ?, ?, 1)",
                    (event_id, outcome.value, target_location, now.isoformat()),
                )
            else:
                conn.execute(
                    "UPDATE dedupe_records SET outcome = ?, target_location = ?, processed_at = ? "
                    "WHERE event_id = ?",
                    (outcome.value, target_location, now.isoformat(), event_id),
                )
            return _row_to_record(self._select(conn, event_id))

    def _get_sync(self, event_id: str) -> Optional[DedupeRecord]:
        with closing(self._connect()) as conn:
            row = self._select(conn, event_id)
        return _row_to_record(row) if row else None

    # -------------------------------------------------------------------------
    # Public async API
    # -------------------------------------------------------------------------

    async def check_and_reserve(self, event_id: str) -> Reservation:
        """Reserve ``event_id`` for processing.

        proceed=False with the prior record when it was already written or is
        being processed right now; proceed=True for new ids and failed retries.
        """
        async with self._locks.hold(event_id):
            reservation = await asyncio.to_thread(self._reserve_sync, event_id, utcnow())

        if reservation.proceed and reservation.prior is not None:
            logger.info(
                "Retrying %s (previous outcome %s, attempt %d)",
                event_id, reservation.prior.outcome.value, reservation.prior.attempts + 1,
            )
        elif not reservation.proceed:
            logger.info("Duplicate event %s (prior outcome %s)", event_id, reservation.prior.outcome.value)
        return reservation

    async def commit(
        self,
        event_id: str,
        outcome: Outcome,
        target_location: Optional[str] = None,
    ) -> DedupeRecord:
        """Record the final outcome of a reserved run."""
        if outcome == Outcome.PENDING:
            raise ValueError("commit() requires a final outcome")
        async with self._locks.hold(event_id):
            return await asyncio.to_thread(
                self._commit_sync, event_id, Outcome(outcome), target_location, utcnow(),
            )

    async def get(self, event_id: str) -> Optional[DedupeRecord]:
        return await asyncio.to_thread(self._get_sync, event_id)

    @property
    def active_keys(self) -> int:
        return len(self._locks)
