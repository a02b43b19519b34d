"""Tests for ChainWallet signing, submission and revert classification."""

from unittest.mock import MagicMock

import pytest
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from ledgermind.errors import (
    ContractRejectedError,
    InsufficientAllowanceError,
    LimitExceededError,
    TransientChainError,
)
from ledgermind.wallet import DEFAULT_GAS_LIMIT, ChainWallet


INTENT = "0x" + "a1" * 20
MERCHANT = "0x" + "44" * 20
TOKEN = "0x" + "33" * 20
RECEIPT = "0x" + "ee" * 32
TX_HASH = HexBytes("0x" + "ab" * 32)


def _receipt(status: int = 1, gas_used: int = 50_000, block_number: int = 7) -> dict:
    return {
        "transactionHash": TX_HASH,
        "status": status,
        "gasUsed": gas_used,
        "blockNumber": block_number,
    }


def _wallet(estimate: int = 100_000, chain_id=1328):
    """ChainWallet over a mocked w3; returns (wallet, w3, contract function)."""
    w3 = MagicMock()
    fn = MagicMock()
    fn.estimate_gas.return_value = estimate
    fn.build_transaction.side_effect = lambda params: {
        **{k: v for k, v in params.items() if k != "from"},
        "to": Web3.to_checksum_address(INTENT),
        "value": 0,
        "data": "0x",
    }
    functions = w3.eth.contract.return_value.functions
    for name in ("execute", "transfer", "approve", "topUp", "revoke"):
        getattr(functions, name).return_value = fn
    w3.eth.get_transaction_count.return_value = 3
    w3.eth.gas_price = 1_000_000_000
    w3.eth.send_raw_transaction.return_value = TX_HASH
    w3.eth.wait_for_transaction_receipt.return_value = _receipt()
    wallet = ChainWallet(w3, Account.create(), chain_id=chain_id)
    return wallet, w3, fn


class TestSubmit:
    def test_execute_signs_and_waits_for_receipt(self):
        wallet, w3, fn = _wallet()

        status = wallet.execute(INTENT, MERCHANT, 120, RECEIPT, "ipfs://receipt")

        assert status.succeeded
        assert status.tx_hash == "0x" + "ab" * 32
        assert status.gas_used == 50_000
        assert status.block_number == 7
        params = fn.build_transaction.call_args.args[0]
        assert params["gas"] == 110_000
        assert params["nonce"] == 3
        assert params["chainId"] == 1328
        merchant, amount, receipt_hash, uri = (
            w3.eth.contract.return_value.functions.execute.call_args.args
        )
        assert merchant == Web3.to_checksum_address(MERCHANT)
        assert amount == 120
        assert receipt_hash == bytes.fromhex("ee" * 32)
        assert uri == "ipfs://receipt"
        w3.eth.send_raw_transaction.assert_called_once()

    def test_chain_id_is_optional(self):
        wallet, _, fn = _wallet(chain_id=None)
        wallet.account = MagicMock(address=wallet.account.address)
        wallet.account.sign_transaction.return_value.raw_transaction = b"\x01"
        wallet.transfer(TOKEN, INTENT, 5)
        assert "chainId" not in fn.build_transaction.call_args.args[0]

    def test_gas_estimate_failure_uses_default_limit(self):
        wallet, _, fn = _wallet()
        fn.estimate_gas.side_effect = ValueError("estimate unavailable")

        wallet.top_up(INTENT, 10)

        assert fn.build_transaction.call_args.args[0]["gas"] == DEFAULT_GAS_LIMIT

    def test_rejects_short_receipt_hash(self):
        wallet, w3, _ = _wallet()
        with pytest.raises(ValueError, match="32-byte"):
            wallet.execute(INTENT, MERCHANT, 1, "0x1234", "")
        w3.eth.send_raw_transaction.assert_not_called()


class TestReverts:
    def test_estimate_revert_is_classified_before_sending(self):
        wallet, w3, fn = _wallet()
        fn.estimate_gas.side_effect = ContractLogicError(
            "execution reverted: PaymentIntent: exceeds per tx cap"
        )

        with pytest.raises(LimitExceededError) as exc:
            wallet.execute(INTENT, MERCHANT, 500, RECEIPT, "")

        assert exc.value.revert_reason == "PaymentIntent: exceeds per tx cap"
        assert exc.value.intent == INTENT
        w3.eth.send_raw_transaction.assert_not_called()

    def test_mined_failure_is_replayed_for_its_reason(self):
        wallet, w3, fn = _wallet()
        w3.eth.wait_for_transaction_receipt.return_value = _receipt(status=0, gas_used=60_000)
        fn.call.side_effect = ContractLogicError(
            "execution reverted: PaymentIntent: insufficient balance"
        )

        with pytest.raises(InsufficientAllowanceError) as exc:
            wallet.execute(INTENT, MERCHANT, 120, RECEIPT, "")

        assert exc.value.revert_reason == "PaymentIntent: insufficient balance"
        assert fn.call.call_args.kwargs["block_identifier"] == 7

    def test_mined_failure_using_all_gas_is_out_of_gas(self):
        wallet, w3, fn = _wallet(estimate=100_000)
        w3.eth.wait_for_transaction_receipt.return_value = _receipt(status=0, gas_used=110_000)

        with pytest.raises(LimitExceededError) as exc:
            wallet.execute(INTENT, MERCHANT, 120, RECEIPT, "")

        assert exc.value.revert_reason == "out of gas"
        fn.call.assert_not_called()

    def test_mined_failure_without_reason(self):
        wallet, w3, fn = _wallet()
        w3.eth.wait_for_transaction_receipt.return_value = _receipt(status=0, gas_used=60_000)
        fn.call.return_value = None

        with pytest.raises(ContractRejectedError) as exc:
            wallet.revoke(INTENT, "done")

        assert type(exc.value) is ContractRejectedError
        assert exc.value.revert_reason == "transaction reverted"


class TestTransport:
    def test_receipt_timeout_is_transient(self):
        wallet, w3, _ = _wallet()
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("no receipt after 120s")

        with pytest.raises(TransientChainError, match="receipt not available"):
            wallet.execute(INTENT, MERCHANT, 1, RECEIPT, "")

    def test_connection_failure_is_transient(self):
        wallet, w3, _ = _wallet()
        w3.eth.send_raw_transaction.side_effect = ConnectionError("connection refused")

        with pytest.raises(TransientChainError, match="ConnectionError"):
            wallet.approve(TOKEN, INTENT, 10)
