"""Tests for the SQLite ledger store."""

import pytest

from ledgermind.errors import StoreError
from ledgermind.store import (
    IntentRecord,
    LedgerStore,
    MerchantEntry,
    ReceiptRecord,
    RevocationRecord,
    TopUpRecord,
)
from ledgermind.units import UINT256_MAX


PAYER = "0x" + "11" * 20
AGENT = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20
MERCHANT = "0x" + "44" * 20


def _intent(address: str, created_at: int = 1_000, end_time: int = 10_000, **kwargs) -> IntentRecord:
    fields = dict(
        address=address,
        payer=PAYER,
        agent=AGENT,
        token=TOKEN,
        total_cap=1_000,
        per_tx_cap=100,
        start_time=0,
        end_time=end_time,
        tx_hash="0x" + address[-2:] * 32,
        block_number=created_at,
        created_at=created_at,
    )
    fields.update(kwargs)
    return IntentRecord(**fields)


def _receipt(intent: str, tx: str, amount: int, block: int = 5, log_index: int = 0) -> ReceiptRecord:
    return ReceiptRecord(
        tx_hash=tx,
        intent_address=intent,
        merchant=MERCHANT,
        amount=amount,
        token=TOKEN,
        receipt_hash="0x" + "ee" * 32,
        receipt_uri="ipfs://bafy",
        timestamp=1_500,
        block_number=block,
        log_index=log_index,
        gas_used=95_000,
    )


@pytest.fixture
def store(tmp_path):
    return LedgerStore(tmp_path / "ledger.sqlite3")


INTENT = "0x" + "a1" * 20


class TestIntents:
    def test_insert_is_idempotent(self, store):
        assert store.insert_intent(_intent(INTENT)) is True
        assert store.insert_intent(_intent(INTENT, total_cap=5)) is False
        assert store.get_intent(INTENT).total_cap == 1_000
        assert store.intent_addresses() == [INTENT]

    def test_uint256_caps_survive(self, store):
        store.insert_intent(_intent(INTENT, total_cap=UINT256_MAX, per_tx_cap=UINT256_MAX))
        record = store.get_intent(INTENT)
        assert record.total_cap == UINT256_MAX
        assert record.per_tx_cap == UINT256_MAX

    def test_find_intents_newest_first_with_paging(self, store):
        for i in range(3):
            store.insert_intent(_intent("0x" + f"b{i}" * 20, created_at=100 + i))
        page = store.find_intents(payer=PAYER, limit=2)
        assert [r.created_at for r in page] == [102, 101]
        assert [r.created_at for r in store.find_intents(agent=AGENT, limit=2, offset=2)] == [100]
        assert store.find_intents(payer="0x" + "99" * 20) == []

    def test_find_intents_by_derived_state(self, store):
        live = "0x" + "c1" * 20
        ended = "0x" + "c2" * 20
        revoked = "0x" + "c3" * 20
        store.insert_intent(_intent(live, end_time=5_000))
        store.insert_intent(_intent(ended, end_time=2_000))
        store.insert_intent(_intent(revoked, end_time=5_000))
        store.record_revocation(
            RevocationRecord("0x" + "0d" * 32, revoked, PAYER, "done", 1_200, 7)
        )

        def addresses(state):
            return {r.address for r in store.find_intents(state=state, now=3_000)}

        assert addresses("active") == {live}
        assert addresses("expired") == {ended}
        assert addresses("revoked") == {revoked}
        assert addresses("paused") == set()
        with pytest.raises(ValueError):
            store.find_intents(state="bogus")


class TestEventRows:
    def test_execution_replay_is_ignored(self, store):
        store.insert_intent(_intent(INTENT))
        assert store.record_execution(_receipt(INTENT, "0x" + "01" * 32, 40), spent=40) is True
        assert store.record_execution(_receipt(INTENT, "0x" + "01" * 32, 40), spent=40) is False
        assert len(store.list_receipts(INTENT)) == 1
        assert store.get_intent(INTENT).spent == 40

    def test_spent_is_monotonic_and_capped(self, store):
        store.insert_intent(_intent(INTENT))
        store.record_execution(_receipt(INTENT, "0x" + "01" * 32, 90), spent=90)
        store.record_execution(_receipt(INTENT, "0x" + "02" * 32, 10, block=6), spent=50)
        assert store.get_intent(INTENT).spent == 90
        store.record_execution(_receipt(INTENT, "0x" + "03" * 32, 10, block=7), spent=5_000)
        assert store.get_intent(INTENT).spent == 90

    def test_execution_for_unknown_intent_rolls_back(self, store):
        with pytest.raises(StoreError):
            store.record_execution(_receipt(INTENT, "0x" + "01" * 32, 40), spent=40)
        assert store.list_receipts(INTENT) == []

    def test_receipts_newest_first(self, store):
        store.insert_intent(_intent(INTENT))
        store.record_execution(_receipt(INTENT, "0x" + "01" * 32, 10, block=5), spent=10)
        store.record_execution(_receipt(INTENT, "0x" + "02" * 32, 20, block=9), spent=30)
        store.record_execution(_receipt(INTENT, "0x" + "03" * 32, 30, block=9, log_index=1), spent=60)
        assert [r.amount for r in store.list_receipts(INTENT)] == [30, 20, 10]
        assert [r.amount for r in store.list_receipts(INTENT, limit=1, offset=1)] == [20]

    def test_revocation_sets_terminal_state(self, store):
        store.insert_intent(_intent(INTENT))
        store.record_revocation(RevocationRecord("0x" + "0a" * 32, INTENT, PAYER, "first", 1_100, 6))
        store.record_revocation(RevocationRecord("0x" + "0b" * 32, INTENT, PAYER, "second", 1_200, 7))
        record = store.get_intent(INTENT)
        assert record.state == "revoked"
        assert record.revoke_reason == "first"
        assert len(store.list_revocations(INTENT)) == 2

    def test_top_up_replay_is_ignored(self, store):
        store.insert_intent(_intent(INTENT))
        top_up = TopUpRecord("0x" + "0c" * 32, INTENT, 500, 1_100, 6)
        assert store.record_top_up(top_up) is True
        assert store.record_top_up(top_up) is False
        assert [t.amount for t in store.list_top_ups(INTENT)] == [500]

    def test_merchant_upsert_keeps_latest_position(self, store):
        store.insert_intent(_intent(INTENT))
        assert store.upsert_merchant(MerchantEntry(INTENT, MERCHANT, False, 10, 0)) is True
        assert store.upsert_merchant(MerchantEntry(INTENT, MERCHANT, True, 8, 3)) is False
        assert store.get_merchants(INTENT) == {MERCHANT: False}
        assert store.upsert_merchant(MerchantEntry(INTENT, MERCHANT, True, 10, 1)) is True
        assert store.get_merchants(INTENT) == {MERCHANT: True}


class TestCursorAndWriter:
    def test_cursor_never_moves_back(self, store):
        assert store.get_cursor() is None
        assert store.advance_cursor(105) == 105
        assert store.advance_cursor(90) == 105
        assert store.get_cursor() == 105

    def test_single_writer(self, tmp_path):
        first = LedgerStore(tmp_path / "ledger.sqlite3")
        second = LedgerStore(tmp_path / "ledger.sqlite3")
        first.claim_writer()
        try:
            with pytest.raises(StoreError, match="already has an active writer"):
                second.claim_writer()
        finally:
            first.release_writer()
        second.claim_writer()
        second.release_writer()
