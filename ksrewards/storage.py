"""
SQLite persistence for accounts, gift codes and redemption history

Every operation opens its own short-lived connection; the database runs in
WAL mode so readers (including backups) never block the writer.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from .status import SUCCESS_LITERALS, CodeStatus

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# Allowed moves of gift_codes.validation_status; invalid and expired are terminal
ALLOWED_TRANSITIONS = {
    CodeStatus.PENDING: {CodeStatus.VALIDATED, CodeStatus.INVALID, CodeStatus.EXPIRED},
    CodeStatus.VALIDATED: {CodeStatus.EXPIRED, CodeStatus.INVALID},
    CodeStatus.INVALID: set(),
    CodeStatus.EXPIRED: set(),
}

MAX_PRIORITY = 100


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS accounts (
        fid TEXT PRIMARY KEY,
        nickname TEXT,
        kingdom TEXT,
        avatar_url TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS gift_codes (
        code TEXT PRIMARY KEY,
        validation_status TEXT NOT NULL DEFAULT 'pending',
        source TEXT NOT NULL DEFAULT 'api',
        date_discovered TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS redemptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fid TEXT NOT NULL,
        code TEXT NOT NULL,
        status TEXT NOT NULL,
        redeemed_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS redemption_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fid TEXT NOT NULL,
        code TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending',
        error_message TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(fid, code),
        FOREIGN KEY(code) REFERENCES gift_codes(code) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS priority_accounts (
        fid TEXT PRIMARY KEY,
        priority INTEGER NOT NULL,
        added_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS db_version (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        version INTEGER,
        migrated_ts TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_redemptions_fid_code ON redemptions(fid, code);
    CREATE INDEX IF NOT EXISTS idx_redemptions_code ON redemptions(code);
    CREATE INDEX IF NOT EXISTS idx_redemptions_status ON redemptions(status);
    CREATE INDEX IF NOT EXISTS idx_queue_status_priority ON redemption_queue(status, priority DESC, created_at);
    CREATE INDEX IF NOT EXISTS idx_gift_codes_status ON gift_codes(validation_status);
"""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Account:
    fid: str
    nickname: Optional[str]
    kingdom: Optional[str]
    avatar: Optional[str]
    active: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Account":
        return cls(
            fid=row["fid"],
            nickname=row["nickname"],
            kingdom=row["kingdom"],
            avatar=row["avatar_url"],
            active=bool(row["active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class PriorityAccount:
    fid: str
    priority: int
    added_at: str
    nickname: Optional[str] = None


@dataclass
class GiftCode:
    code: str
    validation_status: CodeStatus
    source: str
    discovered_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "GiftCode":
        return cls(
            code=row["code"],
            validation_status=CodeStatus(row["validation_status"]),
            source=row["source"],
            discovered_at=row["date_discovered"],
        )


@dataclass
class RedemptionRecord:
    id: int
    fid: str
    code: str
    status: str
    redeemed_at: str
    nickname: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in SUCCESS_LITERALS

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RedemptionRecord":
        keys = row.keys()
        return cls(
            id=row["id"],
            fid=row["fid"],
            code=row["code"],
            status=row["status"],
            redeemed_at=row["redeemed_at"],
            nickname=row["nickname"] if "nickname" in keys else None,
        )


class Database:
    """Handles all database operations"""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections"""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database schema"""
        with self.get_connection() as conn:
            conn.executescript("""
                PRAGMA journal_mode=WAL;
                PRAGMA synchronous=NORMAL;
            """)
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='db_version'")
            if cursor.fetchone() is None:
                self._create_fresh_schema(conn)
            else:
                self._migrate_schema(conn)

    def _create_fresh_schema(self, conn: sqlite3.Connection):
        """Create fresh database schema for new installations"""
        conn.executescript(SCHEMA_SQL)
        conn.execute("INSERT INTO db_version (version, migrated_ts) VALUES (?, ?)", (SCHEMA_VERSION, utcnow_iso()))
        conn.commit()

    def _migrate_schema(self, conn: sqlite3.Connection):
        """Bring an existing database up to SCHEMA_VERSION"""
        row = conn.execute("SELECT version FROM db_version ORDER BY id DESC LIMIT 1").fetchone()
        current_version = row[0] if row else 1
        if current_version >= SCHEMA_VERSION:
            return

        try:
            if current_version < 2:
                # v1 databases predate the profile columns and the priority registry
                columns = [r[1] for r in conn.execute("PRAGMA table_info(accounts)").fetchall()]
                for column in ("kingdom", "avatar_url"):
                    if column not in columns:
                        logger.info(f"Adding {column} column to accounts table...")
                        conn.execute(f"ALTER TABLE accounts ADD COLUMN {column} TEXT")
                conn.commit()
            conn.executescript(SCHEMA_SQL)
            conn.execute("INSERT INTO db_version (version, migrated_ts) VALUES (?, ?)", (SCHEMA_VERSION, utcnow_iso()))
            conn.commit()
            logger.info(f"Database migrated from v{current_version} to v{SCHEMA_VERSION}")
        except sqlite3.Error as e:
            logger.error(f"Migration to v{SCHEMA_VERSION} failed: {e}")
            raise

    # -------------------------------
    # Accounts
    # -------------------------------

    def upsert_account(
        self,
        fid: str,
        nickname: Optional[str] = None,
        kingdom: Optional[str] = None,
        avatar: Optional[str] = None,
        active: bool = True,
    ) -> bool:
        """Create an account or refresh its profile; returns True when created"""
        now = utcnow_iso()
        with self.get_connection() as conn:
            existing = conn.execute("SELECT 1 FROM accounts WHERE fid = ?", (fid,)).fetchone()
            if existing:
                conn.execute("""
                    UPDATE accounts SET
                        nickname = COALESCE(?, nickname),
                        kingdom = COALESCE(?, kingdom),
                        avatar_url = COALESCE(?, avatar_url),
                        updated_at = ?
                    WHERE fid = ?
                """, (nickname, kingdom, avatar, now, fid))
            else:
                conn.execute("""
                    INSERT INTO accounts (fid, nickname, kingdom, avatar_url, active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (fid, nickname, kingdom, avatar, 1 if active else 0, now, now))
            conn.commit()
            return existing is None

    def get_account(self, fid: str) -> Optional[Account]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE fid = ?", (fid,)).fetchone()
            return Account.from_row(row) if row else None

    def list_accounts(self) -> List[Account]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT * FROM accounts ORDER BY created_at DESC").fetchall()
            return [Account.from_row(row) for row in rows]

    def list_active_accounts(self) -> List[Account]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT * FROM accounts WHERE active = 1 ORDER BY created_at DESC").fetchall()
            return [Account.from_row(row) for row in rows]

    def set_account_active(self, fid: str, active: bool) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE accounts SET active = ?, updated_at = ? WHERE fid = ?",
                (1 if active else 0, utcnow_iso(), fid),
            )
            conn.commit()
            return cursor.rowcount > 0

    def update_account_profile(
        self,
        fid: str,
        nickname: Optional[str] = None,
        kingdom: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Dict[str, str]:
        """Store profile values that differ from what we have; returns the changed fields"""
        account = self.get_account(fid)
        if account is None:
            return {}

        changes = {}
        if nickname and nickname != account.nickname:
            changes["nickname"] = nickname
        if kingdom and kingdom != account.kingdom:
            changes["kingdom"] = kingdom
        if avatar and avatar != account.avatar:
            changes["avatar_url"] = avatar
        if not changes:
            return {}

        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self.get_connection() as conn:
            conn.execute(
                f"UPDATE accounts SET {assignments}, updated_at = ? WHERE fid = ?",
                (*changes.values(), utcnow_iso(), fid),
            )
            conn.commit()
        return changes

    # -------------------------------
    # Priority accounts
    # -------------------------------

    def set_priority_account(self, fid: str, priority: int):
        if not 1 <= priority <= MAX_PRIORITY:
            raise ValueError(f"Priority must be between 1 and {MAX_PRIORITY}")
        with self.get_connection() as conn:
            conn.execute("""
                INSERT INTO priority_accounts (fid, priority, added_at) VALUES (?, ?, ?)
                ON CONFLICT(fid) DO UPDATE SET priority = excluded.priority
            """, (fid, priority, utcnow_iso()))
            conn.commit()

    def get_priority_account(self, fid: str) -> Optional[PriorityAccount]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM priority_accounts WHERE fid = ?", (fid,)).fetchone()
            return PriorityAccount(row["fid"], row["priority"], row["added_at"]) if row else None

    def remove_priority_account(self, fid: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute("DELETE FROM priority_accounts WHERE fid = ?", (fid,))
            conn.commit()
            return cursor.rowcount > 0

    def list_priority_accounts(self) -> List[PriorityAccount]:
        with self.get_connection() as conn:
            rows = conn.execute("""
                SELECT p.fid, p.priority, p.added_at, a.nickname
                FROM priority_accounts p
                LEFT JOIN accounts a ON a.fid = p.fid
                ORDER BY p.priority DESC, p.added_at ASC
            """).fetchall()
            return [PriorityAccount(r["fid"], r["priority"], r["added_at"], r["nickname"]) for r in rows]

    # -------------------------------
    # Gift codes
    # -------------------------------

    def insert_code(
        self,
        code: str,
        source: str = "api",
        discovered_at: Optional[str] = None,
        status: CodeStatus = CodeStatus.PENDING,
    ) -> bool:
        """Insert a code unless it is already known; returns True when inserted"""
        with self.get_connection() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO gift_codes (code, validation_status, source, date_discovered)
                VALUES (?, ?, ?, ?)
            """, (code, status.value, source, discovered_at or utcnow_iso()))
            conn.commit()
            return cursor.rowcount > 0

    def get_code(self, code: str) -> Optional[GiftCode]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM gift_codes WHERE code = ?", (code,)).fetchone()
            return GiftCode.from_row(row) if row else None

    def list_codes(self, limit: Optional[int] = None) -> List[GiftCode]:
        sql = "SELECT * FROM gift_codes ORDER BY date_discovered DESC"
        params: tuple = ()
        if limit:
            sql += " LIMIT ?"
            params = (limit,)
        with self.get_connection() as conn:
            return [GiftCode.from_row(row) for row in conn.execute(sql, params).fetchall()]

    def list_codes_by_status(self, status: CodeStatus) -> List[GiftCode]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM gift_codes WHERE validation_status = ? ORDER BY date_discovered DESC",
                (status.value,),
            ).fetchall()
            return [GiftCode.from_row(row) for row in rows]

    def known_codes(self) -> Set[str]:
        with self.get_connection() as conn:
            return {row[0] for row in conn.execute("SELECT code FROM gift_codes").fetchall()}

    def set_code_status(self, code: str, status: CodeStatus) -> bool:
        """Move a code to a new validation status if the transition is allowed"""
        predecessors = [old.value for old, targets in ALLOWED_TRANSITIONS.items() if status in targets]
        if not predecessors:
            logger.warning(f"Refusing to move gift code {code} to {status.value}")
            return False

        placeholders = ",".join("?" for _ in predecessors)
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE gift_codes SET validation_status = ? WHERE code = ? AND validation_status IN ({placeholders})",
                (status.value, code, *predecessors),
            )
            conn.commit()
            changed = cursor.rowcount > 0

        if not changed:
            current = self.get_code(code)
            if current is None:
                logger.warning(f"Cannot set status of unknown gift code {code}")
            elif current.validation_status is not status:
                logger.info(
                    f"Ignoring transition of {code} from {current.validation_status.value} to {status.value}"
                )
        return changed

    def delete_code(self, code: str) -> bool:
        """Administrative removal; queue items go with it, history stays"""
        with self.get_connection() as conn:
            cursor = conn.execute("DELETE FROM gift_codes WHERE code = ?", (code,))
            conn.commit()
            return cursor.rowcount > 0

    def code_stats(self) -> Dict[str, int]:
        with self.get_connection() as conn:
            row = conn.execute("""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN validation_status = 'validated' THEN 1 ELSE 0 END) AS validated,
                    SUM(CASE WHEN validation_status = 'pending' THEN 1 ELSE 0 END) AS pending,
                    SUM(CASE WHEN validation_status = 'invalid' THEN 1 ELSE 0 END) AS invalid,
                    SUM(CASE WHEN validation_status = 'expired' THEN 1 ELSE 0 END) AS expired
                FROM gift_codes
            """).fetchone()
            return {key: row[key] or 0 for key in ("total", "validated", "pending", "invalid", "expired")}

    # -------------------------------
    # Redemption history
    # -------------------------------

    def add_redemption(self, fid: str, code: str, status: str) -> int:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO redemptions (fid, code, status, redeemed_at) VALUES (?, ?, ?, ?)",
                (fid, code, status, utcnow_iso()),
            )
            conn.commit()
            return cursor.lastrowid

    def has_successful_redemption(self, fid: str, code: str) -> bool:
        placeholders = ",".join("?" for _ in SUCCESS_LITERALS)
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"SELECT 1 FROM redemptions WHERE fid = ? AND code = ? AND status IN ({placeholders}) LIMIT 1",
                (fid, code, *SUCCESS_LITERALS),
            )
            return cursor.fetchone() is not None

    def latest_successful_redemption(self, fid: str, code: str) -> Optional[RedemptionRecord]:
        placeholders = ",".join("?" for _ in SUCCESS_LITERALS)
        with self.get_connection() as conn:
            row = conn.execute(
                f"""SELECT * FROM redemptions WHERE fid = ? AND code = ? AND status IN ({placeholders})
                    ORDER BY id DESC LIMIT 1""",
                (fid, code, *SUCCESS_LITERALS),
            ).fetchone()
            return RedemptionRecord.from_row(row) if row else None

    def list_redemptions(
        self, fid: Optional[str] = None, code: Optional[str] = None, limit: Optional[int] = None
    ) -> List[RedemptionRecord]:
        clauses = []
        params: list = []
        if fid is not None:
            clauses.append("fid = ?")
            params.append(fid)
        if code is not None:
            clauses.append("code = ?")
            params.append(code)
        sql = "SELECT * FROM redemptions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self.get_connection() as conn:
            return [RedemptionRecord.from_row(row) for row in conn.execute(sql, params).fetchall()]

    def recent_successes(self, limit: int = 50) -> List[RedemptionRecord]:
        placeholders = ",".join("?" for _ in SUCCESS_LITERALS)
        with self.get_connection() as conn:
            rows = conn.execute(f"""
                SELECT r.*, a.nickname
                FROM redemptions r
                LEFT JOIN accounts a ON a.fid = r.fid
                WHERE r.status IN ({placeholders})
                ORDER BY r.id DESC
                LIMIT ?
            """, (*SUCCESS_LITERALS, limit)).fetchall()
            return [RedemptionRecord.from_row(row) for row in rows]

    def redemption_stats(self) -> Dict[str, int]:
        placeholders = ",".join("?" for _ in SUCCESS_LITERALS)
        with self.get_connection() as conn:
            row = conn.execute(f"""
                SELECT
                    COUNT(*) AS total,
                    SUM(CASE WHEN status IN ({placeholders}) THEN 1 ELSE 0 END) AS success
                FROM redemptions
            """, SUCCESS_LITERALS).fetchone()
            total = row["total"] or 0
            success = row["success"] or 0
            return {"total": total, "success": success, "failed": total - success}

    def account_stats(self) -> Dict[str, int]:
        with self.get_connection() as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS total, SUM(CASE WHEN active = 1 THEN 1 ELSE 0 END) AS active
                FROM accounts
            """).fetchone()
            return {"total": row["total"] or 0, "active": row["active"] or 0}
