"""Tests for the event indexer."""

import logging
import time

import pytest
from hexbytes import HexBytes

from ledgermind.chain import event_topic
from ledgermind.errors import DecodeError, StoreError
from ledgermind.indexer import EventIndexer
from ledgermind.local_chain import LocalChain
from ledgermind.store import LedgerStore


PAYER = "0x" + "11" * 20
AGENT = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20
MERCHANT = "0x" + "44" * 20
RECEIPT = "0x" + "ee" * 32


@pytest.fixture
def chain():
    chain = LocalChain(start_time=1_700_000_000)
    chain.mint(TOKEN, PAYER, 10_000)
    return chain


@pytest.fixture
def store(tmp_path):
    return LedgerStore(tmp_path / "ledger.sqlite3")


def _indexer(chain: LocalChain, store: LedgerStore, window: int = 1_000) -> EventIndexer:
    return EventIndexer(chain, store, chain.factory_address, window=window, poll_interval=0.01)


def _create(chain: LocalChain, merchants=(MERCHANT,)) -> str:
    return chain.create_intent(
        payer=PAYER,
        agent=AGENT,
        token=TOKEN,
        total_cap=1_000,
        per_tx_cap=100,
        start_time=chain.now - 10,
        end_time=chain.now + 3_600,
        merchants=merchants,
        metadata_uri="research budget",
    )


class TestCycle:
    def test_mirrors_intent_and_events(self, chain, store):
        intent = _create(chain)
        chain.wallet(PAYER).top_up(intent, 500)
        chain.wallet(AGENT).execute(intent, MERCHANT, 40, RECEIPT, "ipfs://receipt")

        result = _indexer(chain, store).run_cycle()

        assert result.ok
        assert result.intents_created == 1
        assert result.events_applied == 3
        assert store.get_cursor() == chain.latest_block_number()
        record = store.get_intent(intent)
        assert record.payer == PAYER
        assert record.metadata_uri == "research budget"
        assert record.spent == 40
        assert record.created_at == chain.now
        [receipt] = store.list_receipts(intent)
        assert receipt.amount == 40
        assert receipt.receipt_hash == RECEIPT
        assert receipt.gas_used == 95_000
        assert store.get_merchants(intent) == {MERCHANT: True}

    def test_empty_range_is_a_no_op(self, chain, store):
        indexer = _indexer(chain, store)
        indexer.run_cycle()
        result = indexer.run_cycle()
        assert result.ok
        assert result.from_block > result.to_block
        assert store.get_cursor() == 0

    def test_failed_cycle_keeps_cursor_and_next_cycle_resumes(self, chain, store):
        chain.mine(99)
        store.advance_cursor(99)
        intent = _create(chain)
        chain.mine(5)
        indexer = _indexer(chain, store)

        first = indexer.run_cycle()
        assert (first.from_block, first.to_block) == (100, 105)
        assert store.get_cursor() == 105

        chain.wallet(PAYER).top_up(intent, 500)
        chain.wallet(AGENT).execute(intent, MERCHANT, 40, RECEIPT, "")
        chain.mine(3)
        assert chain.latest_block_number() == 110
        chain.fail_next("get_event_logs")

        failed = indexer.run_cycle()
        assert not failed.ok
        assert (failed.from_block, failed.to_block) == (106, 110)
        assert "TransientChainError" in failed.error
        assert store.get_cursor() == 105
        assert store.list_receipts(intent) == []

        retried = indexer.run_cycle()
        assert retried.ok
        assert (retried.from_block, retried.to_block) == (106, 110)
        assert store.get_cursor() == 110
        assert len(store.list_receipts(intent)) == 1

    def test_replay_after_partial_cycle_is_idempotent(self, chain, store):
        intent = _create(chain)
        chain.wallet(PAYER).top_up(intent, 500)
        chain.wallet(AGENT).execute(intent, MERCHANT, 40, RECEIPT, "")
        indexer = _indexer(chain, store)
        chain.fail_next("get_transaction_receipt")

        assert not indexer.run_cycle().ok
        assert store.get_cursor() is None
        assert len(store.list_top_ups(intent)) == 1

        result = indexer.run_cycle()
        assert result.ok
        assert result.intents_created == 0
        assert result.events_applied == 1
        assert len(store.list_top_ups(intent)) == 1
        assert len(store.list_receipts(intent)) == 1
        assert store.get_intent(intent).spent == 40

    def test_undecodable_log_is_skipped(self, chain, store):
        intent = _create(chain)
        chain.inject_log(intent, [HexBytes(event_topic("Executed"))], b"\x01")
        chain.wallet(PAYER).top_up(intent, 500)

        result = _indexer(chain, store).run_cycle()

        assert result.ok
        assert result.events_skipped == 1
        assert len(store.list_top_ups(intent)) == 1
        assert store.list_receipts(intent) == []
        assert store.get_cursor() == chain.latest_block_number()

    def test_bad_contract_read_skips_only_that_event(self, chain, store):
        intent = _create(chain)
        chain.wallet(PAYER).top_up(intent, 500)
        chain.wallet(AGENT).execute(intent, MERCHANT, 40, RECEIPT, "")
        chain.wallet(AGENT).execute(intent, MERCHANT, 60, RECEIPT, "")
        chain.fail_next("read_limits", DecodeError("limits: unexpected contract response"))

        result = _indexer(chain, store).run_cycle()

        assert result.ok
        assert result.events_skipped == 1
        assert result.events_applied == 3
        [receipt] = store.list_receipts(intent)
        assert receipt.amount == 60
        assert store.get_intent(intent).spent == 100
        assert store.get_cursor() == chain.latest_block_number()

    def test_transient_contract_read_still_aborts(self, chain, store):
        intent = _create(chain)
        chain.wallet(PAYER).top_up(intent, 500)
        chain.wallet(AGENT).execute(intent, MERCHANT, 40, RECEIPT, "")
        chain.fail_next("read_limits")

        result = _indexer(chain, store).run_cycle()

        assert not result.ok
        assert store.get_cursor() is None
        assert store.list_receipts(intent) == []

    def test_revocation_is_mirrored(self, chain, store):
        intent = _create(chain)
        chain.wallet(PAYER).revoke(intent, "budget closed")
        _indexer(chain, store).run_cycle()
        record = store.get_intent(intent)
        assert record.state == "revoked"
        assert record.revoked_by == PAYER
        assert record.revoke_reason == "budget closed"

    def test_window_bounds_scan_and_warns_when_behind(self, chain, store, caplog):
        chain.mine(20)
        store.advance_cursor(3)
        with caplog.at_level(logging.WARNING, logger="ledgermind.indexer"):
            result = _indexer(chain, store, window=5).run_cycle()
        assert result.from_block == 15
        assert "fell behind" in caplog.text

    def test_reentrant_tick_is_skipped(self, chain, store):
        indexer = _indexer(chain, store)
        indexer._cycle_lock.acquire()
        try:
            assert indexer.processing
            assert indexer.run_cycle() is None
            indexer.trigger()
            assert not indexer._wake.is_set()
        finally:
            indexer._cycle_lock.release()
        assert indexer.run_cycle().ok


class TestLifecycle:
    def test_run_forever_claims_writer(self, chain, store):
        _create(chain)
        indexer = _indexer(chain, store)
        indexer.run_forever(max_cycles=2)
        assert store.get_cursor() == chain.latest_block_number()
        store.claim_writer()
        store.release_writer()

    def test_second_writer_refused(self, chain, store):
        store.claim_writer()
        try:
            with pytest.raises(StoreError):
                _indexer(chain, store).run_forever(max_cycles=1)
        finally:
            store.release_writer()

    def test_start_and_stop(self, chain, store):
        _create(chain)
        indexer = _indexer(chain, store)
        indexer.start()
        deadline = time.monotonic() + 5
        while store.get_cursor() is None and time.monotonic() < deadline:
            time.sleep(0.01)
        indexer.stop(timeout=5)
        assert store.get_cursor() == chain.latest_block_number()
        assert indexer._thread is None
