"""
Durable per-account redemption queue

One row per (fid, code) pair. Higher priority is served first, then older
items. Items are deleted once their outcome is final, so the queue only ever
holds outstanding work.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .status import SUCCESS_LITERALS, QueueStatus
from .storage import Database, utcnow_iso

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 0
ACCOUNT_PRIORITY = 1
REGISTRATION_PRIORITY = 10


@dataclass
class QueueItem:
    id: int
    fid: str
    code: str
    priority: int
    status: QueueStatus
    attempts: int
    error_message: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueueItem":
        return cls(
            id=row["id"],
            fid=row["fid"],
            code=row["code"],
            priority=row["priority"],
            status=QueueStatus(row["status"]),
            attempts=row["attempts"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _success_placeholders() -> str:
    return ",".join("?" for _ in SUCCESS_LITERALS)


class RedemptionQueue:
    def __init__(self, db: Database):
        self.db = db

    # -------------------------------
    # Adding work
    # -------------------------------

    def enqueue(self, fid: str, code: str, priority: int = DEFAULT_PRIORITY):
        """Add or refresh one item; an item being processed only gets its priority updated"""
        now = utcnow_iso()
        with self.db.get_connection() as conn:
            conn.execute("""
                INSERT INTO redemption_queue (fid, code, priority, status, attempts, created_at, updated_at)
                VALUES (?, ?, ?, 'pending', 0, ?, ?)
                ON CONFLICT(fid, code) DO UPDATE SET
                    priority = excluded.priority,
                    status = CASE WHEN status = 'processing' THEN status ELSE 'pending' END,
                    attempts = CASE WHEN status = 'processing' THEN attempts ELSE 0 END,
                    error_message = CASE WHEN status = 'processing' THEN error_message ELSE NULL END,
                    updated_at = excluded.updated_at
            """, (fid, code, priority, now, now))
            conn.commit()

    def bulk_enqueue_validated(self, priority: int = DEFAULT_PRIORITY) -> int:
        """Queue every validated code for every active account that has not redeemed it yet

        Existing items are left alone. Accounts in the priority registry are
        queued at their own priority when it is higher.
        """
        now = utcnow_iso()
        with self.db.get_connection() as conn:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO redemption_queue (fid, code, priority, status, attempts, created_at, updated_at)
                SELECT a.fid, g.code, MAX(?, COALESCE(p.priority, ?)), 'pending', 0, ?, ?
                FROM accounts a
                CROSS JOIN gift_codes g
                LEFT JOIN priority_accounts p ON p.fid = a.fid
                WHERE a.active = 1
                  AND g.validation_status = 'validated'
                  AND NOT EXISTS (
                      SELECT 1 FROM redemptions r
                      WHERE r.fid = a.fid AND r.code = g.code AND r.status IN ({_success_placeholders()})
                  )
                ORDER BY COALESCE(p.priority, 0) DESC, a.created_at ASC, g.date_discovered ASC
            """, (priority, priority, now, now, *SUCCESS_LITERALS))
            conn.commit()
            added = cursor.rowcount

        if added:
            logger.info(f"Queued {added} redemptions for validated codes")
        return added

    def enqueue_for_account(self, fid: str, priority: int = ACCOUNT_PRIORITY) -> int:
        """Queue every validated code this account has not redeemed successfully"""
        now = utcnow_iso()
        with self.db.get_connection() as conn:
            cursor = conn.execute(f"""
                INSERT INTO redemption_queue (fid, code, priority, status, attempts, created_at, updated_at)
                SELECT a.fid, g.code, ?, 'pending', 0, ?, ?
                FROM accounts a
                CROSS JOIN gift_codes g
                WHERE a.fid = ?
                  AND a.active = 1
                  AND g.validation_status = 'validated'
                  AND NOT EXISTS (
                      SELECT 1 FROM redemptions r
                      WHERE r.fid = a.fid AND r.code = g.code AND r.status IN ({_success_placeholders()})
                  )
                ON CONFLICT(fid, code) DO UPDATE SET
                    priority = excluded.priority,
                    status = CASE WHEN status = 'processing' THEN status ELSE 'pending' END,
                    attempts = CASE WHEN status = 'processing' THEN attempts ELSE 0 END,
                    error_message = CASE WHEN status = 'processing' THEN error_message ELSE NULL END,
                    updated_at = excluded.updated_at
            """, (priority, now, now, fid, *SUCCESS_LITERALS))
            conn.commit()
            return cursor.rowcount

    def enqueue_code_for_all(self, code: str, priority: int = DEFAULT_PRIORITY) -> int:
        """Queue one code for every active account without a success for it"""
        now = utcnow_iso()
        with self.db.get_connection() as conn:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO redemption_queue (fid, code, priority, status, attempts, created_at, updated_at)
                SELECT a.fid, ?, MAX(?, COALESCE(p.priority, ?)), 'pending', 0, ?, ?
                FROM accounts a
                LEFT JOIN priority_accounts p ON p.fid = a.fid
                WHERE a.active = 1
                  AND NOT EXISTS (
                      SELECT 1 FROM redemptions r
                      WHERE r.fid = a.fid AND r.code = ? AND r.status IN ({_success_placeholders()})
                  )
            """, (code, priority, priority, now, now, code, *SUCCESS_LITERALS))
            conn.commit()
            return cursor.rowcount

    # -------------------------------
    # Taking work
    # -------------------------------

    def dequeue_pending(self, limit: int, fid: Optional[str] = None) -> List[QueueItem]:
        sql = "SELECT * FROM redemption_queue WHERE status = 'pending'"
        params: list = []
        if fid is not None:
            sql += " AND fid = ?"
            params.append(fid)
        sql += " ORDER BY priority DESC, created_at ASC, id ASC LIMIT ?"
        params.append(limit)
        with self.db.get_connection() as conn:
            return [QueueItem.from_row(row) for row in conn.execute(sql, params).fetchall()]

    def _set_status(self, item: QueueItem, status: QueueStatus, reason: Optional[str]):
        now = utcnow_iso()
        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE redemption_queue
                SET status = ?, error_message = ?, updated_at = ?
                WHERE id = ?
            """, (status.value, reason, now, item.id))
            conn.commit()
        item.status = status
        item.error_message = reason
        item.updated_at = now

    def mark_processing(self, item: QueueItem) -> bool:
        """Claim a pending item; counts as one attempt

        Returns False when another worker claimed or removed it first.
        """
        now = utcnow_iso()
        with self.db.get_connection() as conn:
            cursor = conn.execute("""
                UPDATE redemption_queue
                SET status = 'processing', error_message = NULL, updated_at = ?, attempts = attempts + 1
                WHERE id = ? AND status = 'pending'
            """, (now, item.id))
            conn.commit()
            if cursor.rowcount == 0:
                return False
            row = conn.execute("SELECT attempts FROM redemption_queue WHERE id = ?", (item.id,)).fetchone()
        item.status = QueueStatus.PROCESSING
        item.error_message = None
        item.updated_at = now
        item.attempts = row["attempts"]
        return True

    def requeue(self, item: QueueItem, reason: str):
        self._set_status(item, QueueStatus.PENDING, reason)

    def mark_failed(self, item: QueueItem, reason: str):
        self._set_status(item, QueueStatus.FAILED, reason)

    def delete(self, item: QueueItem):
        with self.db.get_connection() as conn:
            conn.execute("DELETE FROM redemption_queue WHERE id = ?", (item.id,))
            conn.commit()

    def reset_to_pending(self, item_id: int) -> bool:
        """Give an item a fresh set of attempts

        Items in processing belong to a running worker, which always puts
        them back on exit. Ones orphaned by a crash are freed by
        release_stale at startup.
        """
        with self.db.get_connection() as conn:
            cursor = conn.execute("""
                UPDATE redemption_queue
                SET status = 'pending', attempts = 0, error_message = NULL, updated_at = ?
                WHERE id = ? AND status != 'processing'
            """, (utcnow_iso(), item_id))
            conn.commit()
            return cursor.rowcount > 0

    def reset_many(self, item_ids: Iterable[int]) -> int:
        return sum(1 for item_id in item_ids if self.reset_to_pending(item_id))

    def purge_code(self, code: str) -> int:
        """Drop every item for a code that can no longer be redeemed"""
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM redemption_queue WHERE code = ?", (code,))
            conn.commit()
            removed = cursor.rowcount
        if removed:
            logger.info(f"Removed {removed} queued redemptions for {code}")
        return removed

    def release_stale(self) -> int:
        """Return items left in processing by an interrupted run to pending"""
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE redemption_queue SET status = 'pending', updated_at = ? WHERE status = 'processing'",
                (utcnow_iso(),),
            )
            conn.commit()
            released = cursor.rowcount
        if released:
            logger.warning(f"Released {released} queue items left in processing")
        return released

    # -------------------------------
    # Queries
    # -------------------------------

    def get_item(self, item_id: int) -> Optional[QueueItem]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM redemption_queue WHERE id = ?", (item_id,)).fetchone()
            return QueueItem.from_row(row) if row else None

    def list_items(self, status: Optional[QueueStatus] = None, limit: int = 100) -> List[QueueItem]:
        sql = "SELECT * FROM redemption_queue"
        params: list = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY priority DESC, created_at ASC, id ASC LIMIT ?"
        params.append(limit)
        with self.db.get_connection() as conn:
            return [QueueItem.from_row(row) for row in conn.execute(sql, params).fetchall()]

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        with self.db.get_connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM redemption_queue GROUP BY status"):
                counts[row["status"]] = row["n"]
        counts["total"] = sum(counts.values())
        return counts
