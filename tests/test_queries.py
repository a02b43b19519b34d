"""Tests for the read-side query API."""

import pytest

from ledgermind.indexer import EventIndexer
from ledgermind.local_chain import LocalChain
from ledgermind.projector import IntentState
from ledgermind.queries import MAX_PAGE_SIZE, IntentQueries
from ledgermind.store import LedgerStore


PAYER = "0x" + "11" * 20
AGENT = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20
MERCHANT = "0x" + "44" * 20
RECEIPT = "0x" + "ee" * 32


@pytest.fixture
def setup(tmp_path):
    chain = LocalChain(start_time=1_700_000_000)
    chain.mint(TOKEN, PAYER, 10_000)
    store = LedgerStore(tmp_path / "ledger.sqlite3")
    queries = IntentQueries(store, clock=lambda: chain.now)
    return chain, store, queries


def _create(chain: LocalChain, duration: int = 3_600) -> str:
    return chain.create_intent(
        payer=PAYER,
        agent=AGENT,
        token=TOKEN,
        total_cap=1_000,
        per_tx_cap=100,
        start_time=chain.now - 10,
        end_time=chain.now + duration,
    )


def _index(chain: LocalChain, store: LedgerStore) -> None:
    assert EventIndexer(chain, store, chain.factory_address).run_cycle().ok


class TestIntentQueries:
    def test_get_intent_projects_stored_rows(self, setup):
        chain, store, queries = setup
        intent = _create(chain)
        chain.wallet(PAYER).top_up(intent, 500)
        chain.wallet(AGENT).execute(intent, MERCHANT, 40, RECEIPT, "")
        chain.wallet(AGENT).execute(intent, MERCHANT, 60, RECEIPT, "")
        _index(chain, store)

        view = queries.get_intent(intent.upper().replace("0X", "0x"))

        assert view.state is IntentState.ACTIVE
        assert view.spent == 100
        assert view.remaining_cap == 900
        assert view.receipt_count == 2
        assert view.topped_up_total == 500
        assert not view.merchant_restricted

    def test_get_unknown_intent(self, setup):
        _, _, queries = setup
        assert queries.get_intent("0x" + "99" * 20) is None

    def test_list_by_payer_agent_and_state(self, setup):
        chain, store, queries = setup
        short = _create(chain, duration=100)
        long = _create(chain, duration=10_000)
        revoked = _create(chain, duration=10_000)
        chain.wallet(PAYER).revoke(revoked, "no longer needed")
        _index(chain, store)
        chain.advance_time(500)

        assert {v.address for v in queries.list_intents(payer=PAYER)} == {short, long, revoked}
        assert [v.address for v in queries.list_intents(agent=AGENT, state="expired")] == [short]
        assert [v.address for v in queries.list_intents(state=IntentState.ACTIVE)] == [long]
        [view] = queries.list_intents(state="revoked")
        assert view.revoke_reason == "no longer needed"

    def test_paging_validation(self, setup):
        _, _, queries = setup
        with pytest.raises(ValueError):
            queries.list_intents(limit=0)
        with pytest.raises(ValueError):
            queries.list_intents(offset=-1)
        with pytest.raises(ValueError):
            queries.list_intents(state="bogus")

    def test_receipts_newest_first(self, setup):
        chain, store, queries = setup
        intent = _create(chain)
        chain.wallet(PAYER).top_up(intent, 500)
        for amount in (10, 20, 30):
            chain.wallet(AGENT).execute(intent, MERCHANT, amount, RECEIPT, "")
        _index(chain, store)

        assert [r.amount for r in queries.list_receipts(intent)] == [30, 20, 10]
        assert [r.amount for r in queries.list_receipts(intent, limit=MAX_PAGE_SIZE * 2, offset=2)] == [10]
        assert queries.get_cursor() == chain.latest_block_number()
