"""
Ledger store: the relational projection of on-chain intent activity.

Backed by SQLite in WAL mode. Every write runs in a BEGIN IMMEDIATE
transaction and every event-derived row is keyed by its transaction hash, so
replaying a block range leaves the store unchanged. Amounts are uint256 and
stored as decimal TEXT.

Only the event indexer writes; everything else reads.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Iterator, Optional

from .errors import StoreError
from .storage import ensure_private_dir, ensure_private_file
from .units import from_db, to_db


logger = logging.getLogger(__name__)


STATE_ACTIVE = "active"
STATE_PAUSED = "paused"
STATE_REVOKED = "revoked"
STATE_EXPIRED = "expired"


@dataclass
class IntentRecord:
    address: str
    payer: str
    agent: str
    token: str
    total_cap: int
    per_tx_cap: int
    start_time: int
    end_time: int
    tx_hash: str
    block_number: int
    created_at: int
    spent: int = 0
    metadata_uri: str = ""
    salt: Optional[str] = None
    state: str = STATE_ACTIVE
    revoked_by: Optional[str] = None
    revoke_reason: Optional[str] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("total_cap", "per_tx_cap", "spent"):
            d[key] = str(d[key])
        return d


@dataclass
class ReceiptRecord:
    tx_hash: str
    intent_address: str
    merchant: str
    amount: int
    token: str
    receipt_hash: str
    receipt_uri: str
    timestamp: int
    block_number: int
    log_index: int = 0
    gas_used: int = 0

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount"] = str(self.amount)
        return d


@dataclass
class TopUpRecord:
    tx_hash: str
    intent_address: str
    amount: int
    timestamp: int
    block_number: int
    log_index: int = 0


@dataclass
class WithdrawalRecord:
    tx_hash: str
    intent_address: str
    to_address: str
    amount: int
    timestamp: int
    block_number: int
    log_index: int = 0


@dataclass
class RevocationRecord:
    tx_hash: str
    intent_address: str
    revoked_by: str
    reason: str
    timestamp: int
    block_number: int
    log_index: int = 0


@dataclass
class MerchantEntry:
    intent_address: str
    merchant: str
    allowed: bool
    block_number: int
    log_index: int


# Databases with a live write-owning indexer in this process
_WRITERS: set[str] = set()
_WRITERS_LOCK = threading.Lock()


class LedgerStore:
    """SQLite-backed mirror of intents, receipts and fund movements."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS intents (
                    address TEXT PRIMARY KEY,
                    payer TEXT NOT NULL,
                    agent TEXT NOT NULL,
                    token TEXT NOT NULL,
                    total_cap TEXT NOT NULL,
                    per_tx_cap TEXT NOT NULL,
                    spent TEXT NOT NULL DEFAULT '0',
                    start_time INTEGER NOT NULL,
                    end_time INTEGER NOT NULL,
                    metadata_uri TEXT NOT NULL DEFAULT '',
                    salt TEXT,
                    tx_hash TEXT NOT NULL,
                    block_number INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    state TEXT NOT NULL DEFAULT 'active',
                    revoked_by TEXT,
                    revoke_reason TEXT,
                    updated_at INTEGER NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_intents_payer ON intents (payer, created_at);
                CREATE INDEX IF NOT EXISTS idx_intents_agent ON intents (agent, created_at);

                CREATE TABLE IF NOT EXISTS merchants (
                    intent_address TEXT NOT NULL,
                    merchant TEXT NOT NULL,
                    allowed INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL,
                    PRIMARY KEY (intent_address, merchant)
                );

                CREATE TABLE IF NOT EXISTS receipts (
                    tx_hash TEXT PRIMARY KEY,
                    intent_address TEXT NOT NULL,
                    merchant TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    token TEXT NOT NULL,
                    receipt_hash TEXT NOT NULL,
                    receipt_uri TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL DEFAULT 0,
                    gas_used INTEGER NOT NULL DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_receipts_intent
                    ON receipts (intent_address, block_number, log_index);

                CREATE TABLE IF NOT EXISTS top_ups (
                    tx_hash TEXT PRIMARY KEY,
                    intent_address TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS withdrawals (
                    tx_hash TEXT PRIMARY KEY,
                    intent_address TEXT NOT NULL,
                    to_address TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS revocations (
                    tx_hash TEXT PRIMARY KEY,
                    intent_address TEXT NOT NULL,
                    revoked_by TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    log_index INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS indexer_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    last_block INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                );
                """
            )

    # ── Writer ownership ─────────────────────────────────────────────

    def claim_writer(self) -> None:
        """Register the caller as the only writer for this database in-process."""
        key = str(self.db_path.resolve())
        with _WRITERS_LOCK:
            if key in _WRITERS:
                raise StoreError(f"Ledger store {self.db_path} already has an active writer")
            _WRITERS.add(key)

    def release_writer(self) -> None:
        with _WRITERS_LOCK:
            _WRITERS.discard(str(self.db_path.resolve()))

    # ── Row mapping ──────────────────────────────────────────────────

    def _row_to_intent(self, row: sqlite3.Row) -> IntentRecord:
        return IntentRecord(
            address=row["address"],
            payer=row["payer"],
            agent=row["agent"],
            token=row["token"],
            total_cap=from_db(row["total_cap"]),
            per_tx_cap=from_db(row["per_tx_cap"]),
            spent=from_db(row["spent"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            metadata_uri=row["metadata_uri"],
            salt=row["salt"],
            tx_hash=row["tx_hash"],
            block_number=row["block_number"],
            created_at=row["created_at"],
            state=row["state"],
            revoked_by=row["revoked_by"],
            revoke_reason=row["revoke_reason"],
        )

    def _row_to_receipt(self, row: sqlite3.Row) -> ReceiptRecord:
        return ReceiptRecord(
            tx_hash=row["tx_hash"],
            intent_address=row["intent_address"],
            merchant=row["merchant"],
            amount=from_db(row["amount"]),
            token=row["token"],
            receipt_hash=row["receipt_hash"],
            receipt_uri=row["receipt_uri"],
            timestamp=row["timestamp"],
            block_number=row["block_number"],
            log_index=row["log_index"],
            gas_used=row["gas_used"],
        )

    # ── Intents ──────────────────────────────────────────────────────

    def insert_intent(self, record: IntentRecord) -> bool:
        """Insert an intent if absent. Returns True when a row was created."""
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO intents (
                    address, payer, agent, token, total_cap, per_tx_cap, spent,
                    start_time, end_time, metadata_uri, salt, tx_hash, block_number,
                    created_at, state, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.address,
                    record.payer,
                    record.agent,
                    record.token,
                    to_db(record.total_cap),
                    to_db(record.per_tx_cap),
                    to_db(record.spent),
                    record.start_time,
                    record.end_time,
                    record.metadata_uri or "",
                    record.salt,
                    record.tx_hash,
                    record.block_number,
                    record.created_at,
                    record.state,
                    int(time.time()),
                ),
            )
            return cur.rowcount > 0

    def get_intent(self, address: str) -> Optional[IntentRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM intents WHERE address = ?", (address,)
            ).fetchone()
        return self._row_to_intent(row) if row else None

    def intent_addresses(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT address FROM intents ORDER BY block_number, address"
            ).fetchall()
        return [r["address"] for r in rows]

    def find_intents(
        self,
        payer: Optional[str] = None,
        agent: Optional[str] = None,
        state: Optional[str] = None,
        now: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[IntentRecord]:
        """List intents newest first, filtering on the derived lifecycle state."""
        now = int(time.time()) if now is None else int(now)
        clauses: list[str] = []
        params: list = []
        if payer:
            clauses.append("payer = ?")
            params.append(payer)
        if agent:
            clauses.append("agent = ?")
            params.append(agent)
        if state == STATE_EXPIRED:
            clauses.append("state != ? AND end_time <= ?")
            params.extend([STATE_REVOKED, now])
        elif state == STATE_REVOKED:
            clauses.append("state = ?")
            params.append(STATE_REVOKED)
        elif state in (STATE_ACTIVE, STATE_PAUSED):
            clauses.append("state = ? AND end_time > ?")
            params.extend([state, now])
        elif state is not None:
            raise ValueError(f"Unknown intent state filter: {state}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM intents {where}
                ORDER BY created_at DESC, block_number DESC, address
                LIMIT ? OFFSET ?
                """,
                (*params, int(limit), int(offset)),
            ).fetchall()
        return [self._row_to_intent(r) for r in rows]

    def update_spent(self, conn: sqlite3.Connection, address: str, spent: int) -> bool:
        """Raise an intent's spent to ``spent``; never lowers it or exceeds the cap."""
        row = conn.execute(
            "SELECT spent, total_cap FROM intents WHERE address = ?", (address,)
        ).fetchone()
        if row is None:
            raise StoreError(f"Unknown intent {address}")
        current, total_cap = from_db(row["spent"]), from_db(row["total_cap"])
        if spent > total_cap:
            logger.warning(
                "Ignoring spent %d above total cap %d for %s", spent, total_cap, address
            )
            return False
        if spent <= current:
            return False
        conn.execute(
            "UPDATE intents SET spent = ?, updated_at = ? WHERE address = ?",
            (to_db(spent), int(time.time()), address),
        )
        return True

    # ── Event-derived rows ───────────────────────────────────────────

    def record_execution(self, receipt: ReceiptRecord, spent: int) -> bool:
        """Store a receipt and the authoritative spent snapshot atomically."""
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO receipts (
                    tx_hash, intent_address, merchant, amount, token, receipt_hash,
                    receipt_uri, timestamp, block_number, log_index, gas_used
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    receipt.tx_hash,
                    receipt.intent_address,
                    receipt.merchant,
                    to_db(receipt.amount),
                    receipt.token,
                    receipt.receipt_hash,
                    receipt.receipt_uri,
                    receipt.timestamp,
                    receipt.block_number,
                    receipt.log_index,
                    receipt.gas_used,
                ),
            )
            self.update_spent(conn, receipt.intent_address, spent)
            return cur.rowcount > 0

    def record_top_up(self, top_up: TopUpRecord) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO top_ups (
                    tx_hash, intent_address, amount, timestamp, block_number, log_index
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    top_up.tx_hash,
                    top_up.intent_address,
                    to_db(top_up.amount),
                    top_up.timestamp,
                    top_up.block_number,
                    top_up.log_index,
                ),
            )
            return cur.rowcount > 0

    def record_withdrawal(self, withdrawal: WithdrawalRecord) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO withdrawals (
                    tx_hash, intent_address, to_address, amount, timestamp, block_number, log_index
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    withdrawal.tx_hash,
                    withdrawal.intent_address,
                    withdrawal.to_address,
                    to_db(withdrawal.amount),
                    withdrawal.timestamp,
                    withdrawal.block_number,
                    withdrawal.log_index,
                ),
            )
            return cur.rowcount > 0

    def record_revocation(self, revocation: RevocationRecord) -> bool:
        """Store a revocation and move the intent to the terminal revoked state."""
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO revocations (
                    tx_hash, intent_address, revoked_by, reason, timestamp, block_number, log_index
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    revocation.tx_hash,
                    revocation.intent_address,
                    revocation.revoked_by,
                    revocation.reason,
                    revocation.timestamp,
                    revocation.block_number,
                    revocation.log_index,
                ),
            )
            conn.execute(
                """
                UPDATE intents
                SET state = ?, revoked_by = ?, revoke_reason = ?, updated_at = ?
                WHERE address = ? AND state != ?
                """,
                (
                    STATE_REVOKED,
                    revocation.revoked_by,
                    revocation.reason,
                    int(time.time()),
                    revocation.intent_address,
                    STATE_REVOKED,
                ),
            )
            return cur.rowcount > 0

    def upsert_merchant(self, entry: MerchantEntry) -> bool:
        """Apply a merchant allowlist change unless a newer one is already stored."""
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO merchants (intent_address, merchant, allowed, block_number, log_index)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (intent_address, merchant) DO UPDATE SET
                    allowed = excluded.allowed,
                    block_number = excluded.block_number,
                    log_index = excluded.log_index
                WHERE (excluded.block_number, excluded.log_index)
                    > (merchants.block_number, merchants.log_index)
                """,
                (
                    entry.intent_address,
                    entry.merchant,
                    1 if entry.allowed else 0,
                    entry.block_number,
                    entry.log_index,
                ),
            )
            return cur.rowcount > 0

    # ── Reads ────────────────────────────────────────────────────────

    def get_merchants(self, address: str) -> dict[str, bool]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT merchant, allowed FROM merchants WHERE intent_address = ? ORDER BY merchant",
                (address,),
            ).fetchall()
        return {r["merchant"]: bool(r["allowed"]) for r in rows}

    def list_receipts(self, address: str, limit: Optional[int] = 50, offset: int = 0) -> list[ReceiptRecord]:
        """Receipts for an intent, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM receipts WHERE intent_address = ?
                ORDER BY block_number DESC, log_index DESC
                LIMIT ? OFFSET ?
                """,
                (address, -1 if limit is None else int(limit), int(offset)),
            ).fetchall()
        return [self._row_to_receipt(r) for r in rows]

    def list_top_ups(self, address: str) -> list[TopUpRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM top_ups WHERE intent_address = ? ORDER BY block_number, log_index",
                (address,),
            ).fetchall()
        return [
            TopUpRecord(
                tx_hash=r["tx_hash"],
                intent_address=r["intent_address"],
                amount=from_db(r["amount"]),
                timestamp=r["timestamp"],
                block_number=r["block_number"],
                log_index=r["log_index"],
            )
            for r in rows
        ]

    def list_withdrawals(self, address: str) -> list[WithdrawalRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM withdrawals WHERE intent_address = ? ORDER BY block_number, log_index",
                (address,),
            ).fetchall()
        return [
            WithdrawalRecord(
                tx_hash=r["tx_hash"],
                intent_address=r["intent_address"],
                to_address=r["to_address"],
                amount=from_db(r["amount"]),
                timestamp=r["timestamp"],
                block_number=r["block_number"],
                log_index=r["log_index"],
            )
            for r in rows
        ]

    def list_revocations(self, address: str) -> list[RevocationRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM revocations WHERE intent_address = ? ORDER BY block_number, log_index",
                (address,),
            ).fetchall()
        return [
            RevocationRecord(
                tx_hash=r["tx_hash"],
                intent_address=r["intent_address"],
                revoked_by=r["revoked_by"],
                reason=r["reason"],
                timestamp=r["timestamp"],
                block_number=r["block_number"],
                log_index=r["log_index"],
            )
            for r in rows
        ]

    def list_merchant_entries(self, address: str) -> list[MerchantEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM merchants WHERE intent_address = ? ORDER BY block_number, log_index",
                (address,),
            ).fetchall()
        return [
            MerchantEntry(
                intent_address=r["intent_address"],
                merchant=r["merchant"],
                allowed=bool(r["allowed"]),
                block_number=r["block_number"],
                log_index=r["log_index"],
            )
            for r in rows
        ]

    # ── Cursor ───────────────────────────────────────────────────────

    def get_cursor(self) -> Optional[int]:
        """Highest fully processed block, or None before the first cycle."""
        with self._connect() as conn:
            row = conn.execute("SELECT last_block FROM indexer_state WHERE id = 1").fetchone()
        return row["last_block"] if row else None

    def advance_cursor(self, block_number: int) -> int:
        """Move the cursor forward to ``block_number``; it never moves back."""
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO indexer_state (id, last_block, updated_at) VALUES (1, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    last_block = MAX(indexer_state.last_block, excluded.last_block),
                    updated_at = excluded.updated_at
                """,
                (int(block_number), int(time.time())),
            )
            row = conn.execute("SELECT last_block FROM indexer_state WHERE id = 1").fetchone()
        return row["last_block"]
