import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .db_migrations import apply_migrations
from .logging_setup import logger
from .models import EntryType, OcoExit, Order, OrderStatus, Proposal, Signal
from .records import RecommendationRecord, find_matching_record

PENDING_STATUSES = (OrderStatus.NEW.value, OrderStatus.PARTIALLY_FILLED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ms(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp() * 1000) if value is not None else None


class RecommendationStore:
    """SQLite-backed store of recommendation records.

    Each record is kept as a JSON body in ``value`` with the columns the
    reconciliation sweeps filter on mirrored alongside it. The connection is
    shared between the decision and reconciliation threads and serialized with
    a lock; multi-step writes run inside ``BEGIN IMMEDIATE`` transactions.

    Args:
        path: SQLite database file
        dedup_window: How far back ``attach_execution`` looks for a matching record
    """

    def __init__(self, path: Path, dedup_window: timedelta = timedelta(minutes=5)):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.dedup_window = dedup_window
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        with self._lock:
            apply_migrations(self.conn)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except Exception:
                self.conn.rollback()
                raise
            self.conn.commit()

    @staticmethod
    def _columns(record: RecommendationRecord) -> Dict[str, object]:
        return {
            "created_at_ms": _ms(record.created_at),
            "signal": record.signal.value,
            "confidence": record.confidence.value,
            "entry_type": record.entry_type.value if record.entry_type else None,
            "executed": 1 if record.executed else 0,
            "entry_order_id": record.entry_order_id,
            "entry_order_status": record.entry_order_status.value if record.entry_order_status else None,
            "oco_order_list_id": record.oco_order_list_id,
            "exit_claimed_at_ms": _ms(record.exit_claimed_at),
            "value": json.dumps(record.to_dict()),
            "updated_at_ms": _ms(_utcnow()),
        }

    def _insert(self, cur: sqlite3.Cursor, record: RecommendationRecord) -> RecommendationRecord:
        cols = self._columns(record)
        names = ", ".join(cols)
        marks = ", ".join("?" for _ in cols)
        cur.execute(f"INSERT INTO recommendations({names}) VALUES({marks})", tuple(cols.values()))
        record.id = cur.lastrowid
        # body carries the id too
        cur.execute(
            "UPDATE recommendations SET value = ? WHERE id = ?",
            (json.dumps(record.to_dict()), record.id),
        )
        return record

    def _write(self, cur: sqlite3.Cursor, record: RecommendationRecord) -> None:
        if record.id is None:
            raise ValueError("Cannot update a record that was never saved")
        cols = self._columns(record)
        assignments = ", ".join(f"{name} = ?" for name in cols)
        cur.execute(
            f"UPDATE recommendations SET {assignments} WHERE id = ?",
            (*cols.values(), record.id),
        )

    def _query(self, where: str, params: tuple, order: str = "created_at_ms DESC, id DESC") -> List[RecommendationRecord]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(f"SELECT value FROM recommendations WHERE {where} ORDER BY {order}", params)
            return [RecommendationRecord.from_dict(json.loads(row["value"])) for row in cur.fetchall()]

    # --- writes ---

    def save(
        self,
        proposal: Proposal,
        now: Optional[datetime] = None,
        market_context: Optional[Dict[str, str]] = None,
    ) -> RecommendationRecord:
        """Persist a freshly received proposal as an unexecuted record."""
        record = RecommendationRecord.from_proposal(proposal, now or _utcnow(), market_context)
        with self._transaction() as cur:
            self._insert(cur, record)
        logger.debug(f"Recommendation saved | id={record.id} signal={record.signal.value}")
        return record

    def attach_execution(
        self,
        proposal: Proposal,
        executed: bool,
        order: Order,
        now: Optional[datetime] = None,
    ) -> RecommendationRecord:
        """Link an entry order to the record saved for this proposal.

        The newest unexecuted matching record inside the dedup window is
        updated in place; without a match a new record is inserted.
        """
        now = now or _utcnow()
        since = now - self.dedup_window
        with self._transaction() as cur:
            cur.execute(
                "SELECT value FROM recommendations WHERE executed = 0 AND created_at_ms >= ? "
                "ORDER BY created_at_ms DESC, id DESC",
                (_ms(since),),
            )
            candidates = [RecommendationRecord.from_dict(json.loads(r["value"])) for r in cur.fetchall()]
            record = find_matching_record(candidates, proposal, now, self.dedup_window)
            if record is None:
                logger.warning(
                    f"No matching recommendation for execution, inserting new record | "
                    f"signal={proposal.signal.value} order_id={order.order_id}"
                )
                record = RecommendationRecord.from_proposal(proposal, now)
                record.apply_order(order, executed)
                self._insert(cur, record)
            else:
                record.apply_order(order, executed)
                self._write(cur, record)
        logger.info(
            f"Execution attached | id={record.id} order_id={order.order_id} "
            f"status={order.status.value} executed={record.executed}"
        )
        return record

    def attach_oco(self, record: RecommendationRecord, oco: OcoExit) -> RecommendationRecord:
        record.apply_oco(oco)
        self.update(record)
        logger.info(f"OCO attached | id={record.id} order_list_id={oco.order_list_id}")
        return record

    def claim_exit(self, record: RecommendationRecord, now: Optional[datetime] = None) -> bool:
        """Atomically claim the right to place this record's exit.

        Succeeds only if no claim and no OCO exist in storage. On success the
        claim timestamp is persisted and set on ``record``.
        """
        now = now or _utcnow()
        with self._transaction() as cur:
            cur.execute(
                "SELECT value, exit_claimed_at_ms, oco_order_list_id FROM recommendations WHERE id = ?",
                (record.id,),
            )
            row = cur.fetchone()
            if row is None or row["exit_claimed_at_ms"] is not None or row["oco_order_list_id"] is not None:
                return False
            current = RecommendationRecord.from_dict(json.loads(row["value"]))
            current.exit_claimed_at = now
            self._write(cur, current)
        record.exit_claimed_at = now
        return True

    def update(self, record: RecommendationRecord) -> None:
        """Persist ``record``, keeping any lifecycle progress already stored."""
        with self._transaction() as cur:
            cur.execute("SELECT value FROM recommendations WHERE id = ?", (record.id,))
            row = cur.fetchone()
            if row is not None:
                record.carry_forward(RecommendationRecord.from_dict(json.loads(row["value"])))
            self._write(cur, record)

    # --- reads ---

    def get(self, record_id: int) -> Optional[RecommendationRecord]:
        found = self._query("id = ?", (record_id,))
        return found[0] if found else None

    def find_by_entry_order_id(self, order_id: int) -> Optional[RecommendationRecord]:
        found = self._query("entry_order_id = ?", (order_id,))
        return found[0] if found else None

    def find_recent_since(self, since: datetime) -> List[RecommendationRecord]:
        """All records created at or after ``since``, newest first."""
        return self._query("created_at_ms >= ?", (_ms(since),))

    def find_unexecuted_since(self, since: datetime) -> List[RecommendationRecord]:
        return self._query("executed = 0 AND created_at_ms >= ?", (_ms(since),))

    def find_pending_entries(
        self,
        signal: Signal,
        since: datetime,
        entry_type: Optional[EntryType] = None,
    ) -> List[RecommendationRecord]:
        """Unexecuted records with a placed entry order that has not reached a terminal status."""
        where = (
            "executed = 0 AND signal = ? AND created_at_ms >= ? AND entry_order_id IS NOT NULL "
            "AND (entry_order_status IS NULL OR entry_order_status IN (?, ?))"
        )
        params = (signal.value, _ms(since), *PENDING_STATUSES)
        if entry_type is not None:
            where += " AND entry_type = ?"
            params += (entry_type.value,)
        return self._query(where, params, order="created_at_ms ASC, id ASC")

    def find_filled_awaiting_exit(self, since: datetime) -> List[RecommendationRecord]:
        records = self._query(
            "executed = 1 AND signal = ? AND created_at_ms >= ? "
            "AND oco_order_list_id IS NULL AND exit_claimed_at_ms IS NULL",
            (Signal.BUY.value, _ms(since)),
            order="created_at_ms ASC, id ASC",
        )
        return [r for r in records if r.has_exit_targets]

    def find_with_oco(self, since: datetime) -> List[RecommendationRecord]:
        return self._query(
            "oco_order_list_id IS NOT NULL AND created_at_ms >= ?",
            (_ms(since),),
            order="created_at_ms ASC, id ASC",
        )

    def close(self):
        with self._lock:
            self.conn.close()
