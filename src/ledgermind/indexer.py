"""
Event indexer: the single writer of the ledger store.

Each cycle:
1. Compute [from, to] with from = max(cursor + 1, head - window).
2. Index IntentCreated logs from the factory (insert-if-absent).
3. Scan every known intent for Executed, Revoked, ToppedUp, Withdrawn and
   MerchantUpdated logs and apply them in (block, log index) order.
4. Advance the cursor to ``to``.

A chain or store failure aborts the cycle without moving the cursor, so the
next cycle re-requests the same range. Every write is idempotent, which makes
that replay harmless. A log that fails to decode, or whose intent returns an
unexpected response to a follow-up contract read, is logged and skipped.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .abi import INTENT_EVENTS
from .chain import ChainReader, DecodedEvent
from .config import DEFAULT_BLOCK_WINDOW, DEFAULT_POLL_INTERVAL, normalize_address
from .errors import ChainError, DecodeError, StoreError
from .store import (
    IntentRecord,
    LedgerStore,
    MerchantEntry,
    ReceiptRecord,
    RevocationRecord,
    TopUpRecord,
    WithdrawalRecord,
)


logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome of one indexing cycle."""

    ok: bool
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    intents_created: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    error: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "intents_created": self.intents_created,
            "events_applied": self.events_applied,
            "events_skipped": self.events_skipped,
            "error": self.error,
            "duration": round(self.duration, 3),
        }


class EventIndexer:
    """Polls the chain and mirrors intent events into a LedgerStore."""

    def __init__(
        self,
        reader: ChainReader,
        store: LedgerStore,
        factory_address: str,
        window: int = DEFAULT_BLOCK_WINDOW,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.reader = reader
        self.store = store
        self.factory_address = normalize_address(factory_address)
        self.window = window
        self.poll_interval = poll_interval
        self._cycle_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._block_times: dict[int, int] = {}

    @property
    def processing(self) -> bool:
        return self._cycle_lock.locked()

    # ── Cycle ────────────────────────────────────────────────────────

    def run_cycle(self) -> Optional[CycleResult]:
        """Run one cycle. Returns None if a cycle is already in progress."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Indexer cycle already running; skipping tick")
            return None
        started = time.monotonic()
        result = CycleResult(ok=False)
        try:
            self._run_cycle(result)
            result.ok = True
        except (ChainError, StoreError, sqlite3.Error) as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.exception(
                "Indexer cycle %s-%s aborted, cursor not advanced: %s",
                result.from_block, result.to_block, result.error,
            )
        finally:
            result.duration = time.monotonic() - started
            self._block_times.clear()
            self._cycle_lock.release()
        if result.ok and result.to_block is not None:
            logger.info(
                "Indexed blocks %d-%d: %d new intents, %d events applied, %d skipped (%.2fs)",
                result.from_block, result.to_block, result.intents_created,
                result.events_applied, result.events_skipped, result.duration,
            )
        return result

    def _block_range(self, result: CycleResult) -> Optional[tuple[int, int]]:
        cursor = self.store.get_cursor()
        head = self.reader.latest_block_number()
        next_block = 0 if cursor is None else cursor + 1
        floor = max(head - self.window, 0)
        from_block = max(next_block, floor)
        if cursor is not None and next_block < floor:
            logger.warning(
                "Indexer fell behind: blocks %d-%d are outside the %d-block window and were not scanned",
                next_block, floor - 1, self.window,
            )
        result.from_block, result.to_block = from_block, head
        if from_block > head:
            return None
        return from_block, head

    def _run_cycle(self, result: CycleResult) -> None:
        block_range = self._block_range(result)
        if block_range is None:
            return
        from_block, to_block = block_range

        self._index_new_intents(from_block, to_block, result)

        events: list[DecodedEvent] = []
        for intent in self.store.intent_addresses():
            for event_name in INTENT_EVENTS:
                for raw in self.reader.get_event_logs(intent, event_name, from_block, to_block):
                    try:
                        events.append(self.reader.decode_event(event_name, raw))
                    except DecodeError as e:
                        result.events_skipped += 1
                        logger.warning("Skipping %s log on %s: %s", event_name, intent, e)

        for event in sorted(events, key=lambda e: e.position):
            try:
                applied = self._apply(event)
            except DecodeError as e:
                result.events_skipped += 1
                logger.warning("Skipping %s event in %s: %s", event.name, event.tx_hash, e)
                continue
            if applied:
                result.events_applied += 1

        self.store.advance_cursor(to_block)

    def _block_time(self, block_number: int) -> int:
        if block_number not in self._block_times:
            self._block_times[block_number] = self.reader.get_block(block_number).timestamp
        return self._block_times[block_number]

    def _index_new_intents(self, from_block: int, to_block: int, result: CycleResult) -> None:
        logs = self.reader.get_event_logs(self.factory_address, "IntentCreated", from_block, to_block)
        for raw in logs:
            try:
                event = self.reader.decode_event("IntentCreated", raw)
                address = normalize_address(event.args["intent"])
            except (DecodeError, KeyError, ValueError) as e:
                result.events_skipped += 1
                logger.warning("Skipping IntentCreated log: %s", e)
                continue
            if self.store.get_intent(address) is not None:
                continue
            try:
                params = self.reader.read_intent_params(address)
            except DecodeError as e:
                result.events_skipped += 1
                logger.warning("Skipping intent %s with unreadable parameters: %s", address, e)
                continue
            record = IntentRecord(
                address=address,
                payer=params.payer,
                agent=params.agent,
                token=params.token,
                total_cap=params.total_cap,
                per_tx_cap=params.per_tx_cap,
                start_time=params.start_time,
                end_time=params.end_time,
                metadata_uri=params.metadata_uri,
                salt=event.args.get("salt"),
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                created_at=self._block_time(event.block_number),
            )
            if self.store.insert_intent(record):
                result.intents_created += 1
                logger.info("New intent %s (payer %s, agent %s)", address, params.payer, params.agent)

    def _apply(self, event: DecodedEvent) -> bool:
        args = event.args
        intent = event.address
        if event.name == "Executed":
            status = self.reader.get_transaction_receipt(event.tx_hash)
            limits = self.reader.read_limits(intent)
            return self.store.record_execution(
                ReceiptRecord(
                    tx_hash=event.tx_hash,
                    intent_address=intent,
                    merchant=args["merchant"],
                    amount=int(args["amount"]),
                    token=args["token"],
                    receipt_hash=args["receiptHash"],
                    receipt_uri=args["receiptURI"],
                    timestamp=self._block_time(event.block_number),
                    block_number=event.block_number,
                    log_index=event.log_index,
                    gas_used=status.gas_used,
                ),
                spent=limits.spent,
            )
        if event.name == "Revoked":
            return self.store.record_revocation(
                RevocationRecord(
                    tx_hash=event.tx_hash,
                    intent_address=intent,
                    revoked_by=args["by"],
                    reason=args["reason"],
                    timestamp=self._block_time(event.block_number),
                    block_number=event.block_number,
                    log_index=event.log_index,
                )
            )
        if event.name == "ToppedUp":
            return self.store.record_top_up(
                TopUpRecord(
                    tx_hash=event.tx_hash,
                    intent_address=intent,
                    amount=int(args["amount"]),
                    timestamp=self._block_time(event.block_number),
                    block_number=event.block_number,
                    log_index=event.log_index,
                )
            )
        if event.name == "Withdrawn":
            return self.store.record_withdrawal(
                WithdrawalRecord(
                    tx_hash=event.tx_hash,
                    intent_address=intent,
                    to_address=args["to"],
                    amount=int(args["amount"]),
                    timestamp=self._block_time(event.block_number),
                    block_number=event.block_number,
                    log_index=event.log_index,
                )
            )
        if event.name == "MerchantUpdated":
            return self.store.upsert_merchant(
                MerchantEntry(
                    intent_address=intent,
                    merchant=args["merchant"],
                    allowed=bool(args["allowed"]),
                    block_number=event.block_number,
                    log_index=event.log_index,
                )
            )
        logger.debug("Ignoring unsupported event %s", event.name)
        return False

    # ── Lifecycle ────────────────────────────────────────────────────

    def trigger(self) -> None:
        """Wake the poll loop early. Dropped if a cycle is already running."""
        if not self.processing:
            self._wake.set()

    def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Poll until ``stop()`` is called (or ``max_cycles`` cycles have run)."""
        self.store.claim_writer()
        cycles = 0
        try:
            while not self._stopping.is_set():
                self.run_cycle()
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self._wake.wait(self.poll_interval)
                self._wake.clear()
        finally:
            self.store.release_writer()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self.run_forever, name="ledgermind-indexer", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
