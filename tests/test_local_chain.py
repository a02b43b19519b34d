"""Tests for the in-process intent contracts."""

import pytest

from ledgermind.abi import CONTRACT_STATE_ACTIVE, CONTRACT_STATE_EXPIRED, CONTRACT_STATE_REVOKED
from ledgermind.errors import (
    AuthorizationError,
    ContractRejectedError,
    DecodeError,
    InsufficientAllowanceError,
    LimitExceededError,
    TransientChainError,
)
from ledgermind.local_chain import LocalChain


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


def _create(chain: LocalChain, **kwargs) -> str:
    params = dict(
        payer=PAYER,
        agent=AGENT,
        token=TOKEN,
        total_cap=1_000,
        per_tx_cap=100,
        start_time=chain.now - 10,
        end_time=chain.now + 3_600,
    )
    params.update(kwargs)
    return chain.create_intent(**params)


class TestExecute:
    def test_execute_moves_funds_and_emits_log(self, chain):
        intent = _create(chain)
        chain.wallet(PAYER).top_up(intent, 500)
        status = chain.wallet(AGENT).execute(intent, MERCHANT, 40, RECEIPT, "ipfs://x")

        assert status.succeeded
        assert status.gas_used == 95_000
        assert chain.read_limits(intent).spent == 40
        assert chain.get_balance(intent) == 460
        assert chain.token_balance(TOKEN, MERCHANT) == 40
        logs = chain.get_event_logs(intent, "Executed", 0, chain.latest_block_number())
        event = chain.decode_event("Executed", logs[0])
        assert event.args["amount"] == 40
        assert event.args["merchant"] == MERCHANT
        assert event.args["receiptHash"] == RECEIPT

    def test_not_agent(self, chain):
        intent = _create(chain)
        with pytest.raises(AuthorizationError) as exc:
            chain.wallet(PAYER).execute(intent, MERCHANT, 1, RECEIPT, "")
        assert exc.value.revert_reason == "PaymentIntent: not agent"

    def test_caps_are_checked_before_balance(self, chain):
        intent = _create(chain)
        with pytest.raises(LimitExceededError, match="per tx cap"):
            chain.wallet(AGENT).execute(intent, MERCHANT, 101, RECEIPT, "")
        with pytest.raises(InsufficientAllowanceError):
            chain.wallet(AGENT).execute(intent, MERCHANT, 50, RECEIPT, "")

    def test_window_and_allowlist(self, chain):
        intent = _create(chain, start_time=chain.now + 100, merchants=[MERCHANT])
        chain.wallet(PAYER).top_up(intent, 500)
        with pytest.raises(LimitExceededError, match="too early"):
            chain.wallet(AGENT).execute(intent, MERCHANT, 10, RECEIPT, "")
        chain.advance_time(200)
        with pytest.raises(LimitExceededError, match="merchant not allowed"):
            chain.wallet(AGENT).execute(intent, "0x" + "55" * 20, 10, RECEIPT, "")
        chain.advance_time(3_600)
        with pytest.raises(LimitExceededError, match="too late"):
            chain.wallet(AGENT).execute(intent, MERCHANT, 10, RECEIPT, "")

    def test_removing_last_merchant_blocks_everyone(self, chain):
        intent = _create(chain, merchants=[MERCHANT])
        payer = chain.wallet(PAYER)
        payer.top_up(intent, 500)
        payer.update_merchant(intent, MERCHANT, False)
        assert not chain.is_merchant_allowed(intent, MERCHANT)
        with pytest.raises(LimitExceededError, match="merchant not allowed"):
            chain.wallet(AGENT).execute(intent, "0x" + "55" * 20, 10, RECEIPT, "")

    def test_injected_failure(self, chain):
        intent = _create(chain)
        chain.fail_next("execute")
        with pytest.raises(TransientChainError):
            chain.wallet(AGENT).execute(intent, MERCHANT, 1, RECEIPT, "")


class TestLifecycle:
    def test_revoke_and_withdraw(self, chain):
        intent = _create(chain)
        payer = chain.wallet(PAYER)
        payer.top_up(intent, 300)
        with pytest.raises(ContractRejectedError, match="still active"):
            payer.withdraw_remainder(intent)
        payer.revoke(intent, "done")
        assert chain.read_state(intent) == CONTRACT_STATE_REVOKED
        with pytest.raises(LimitExceededError, match="not active"):
            chain.wallet(AGENT).execute(intent, MERCHANT, 1, RECEIPT, "")
        payer.withdraw_remainder(intent)
        assert chain.get_balance(intent) == 0
        assert chain.token_balance(TOKEN, PAYER) == 10_000

    def test_state_expires_with_clock(self, chain):
        intent = _create(chain)
        assert chain.read_state(intent) == CONTRACT_STATE_ACTIVE
        chain.advance_time(3_600)
        assert chain.read_state(intent) == CONTRACT_STATE_EXPIRED

    def test_invalid_caps_rejected(self, chain):
        with pytest.raises(ContractRejectedError, match="invalid caps"):
            _create(chain, per_tx_cap=2_000)

    def test_unknown_intent(self, chain):
        with pytest.raises(DecodeError):
            chain.read_limits("0x" + "99" * 20)

    def test_factory_lookups(self, chain):
        intent = _create(chain)
        assert chain.get_payer_intents(PAYER) == [intent]
        assert chain.get_agent_intents(AGENT) == [intent]
