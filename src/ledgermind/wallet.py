"""
Contract write interface.

``ChainWallet`` signs with a local eth-account key and submits through a
JSON-RPC node, blocking until each transaction is mined. Reverts are raised
as classified ``ContractRejectedError`` subclasses carrying the contract's
revert string; transport failures as ``TransientChainError``.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .abi import ERC20_ABI, INTENT_ABI
from .chain import TxStatus, hex_str
from .config import normalize_address
from .errors import TransientChainError, classify_revert


logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMIT = 500_000
GAS_BUFFER = 1.1
RECEIPT_TIMEOUT = 120


class ContractWriter(Protocol):
    address: str

    def execute(
        self, intent: str, merchant: str, amount: int, receipt_hash: str, receipt_uri: str
    ) -> TxStatus: ...

    def transfer(self, token: str, to: str, amount: int) -> TxStatus: ...

    def approve(self, token: str, spender: str, amount: int) -> TxStatus: ...

    def top_up(self, intent: str, amount: int) -> TxStatus: ...

    def revoke(self, intent: str, reason: str) -> TxStatus: ...


def _revert_message(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None)
    return message if isinstance(message, str) and message else str(exc)


def _bytes32(value: str) -> bytes:
    raw = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if len(raw) != 32:
        raise ValueError(f"Expected 32-byte hash, got {len(raw)} bytes")
    return raw


class ChainWallet:
    """Signs and submits contract calls for one account."""

    def __init__(
        self,
        w3: Web3,
        account: LocalAccount,
        chain_id: Optional[int] = None,
        gas_limit_fallback: int = DEFAULT_GAS_LIMIT,
        receipt_timeout: float = RECEIPT_TIMEOUT,
    ):
        self.w3 = w3
        self.account = account
        self.address = normalize_address(account.address)
        self.chain_id = chain_id
        self.gas_limit_fallback = gas_limit_fallback
        self.receipt_timeout = receipt_timeout

    def _contract(self, address: str, abi: list):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def _estimate_gas(self, fn, label: str, intent: Optional[str]) -> int:
        try:
            estimate = fn.estimate_gas({"from": self.account.address})
            return int(estimate * GAS_BUFFER)
        except ContractLogicError as e:
            raise classify_revert(_revert_message(e), intent=intent) from e
        except (Web3Exception, OSError, ValueError) as e:
            logger.warning(
                "Gas estimation for %s failed, using default %d: %s",
                label, self.gas_limit_fallback, e,
            )
            return self.gas_limit_fallback

    def _send(self, fn, label: str, intent: Optional[str] = None) -> TxStatus:
        gas = self._estimate_gas(fn, label, intent)
        try:
            tx_params = {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
                "gas": gas,
                "gasPrice": self.w3.eth.gas_price,
            }
            if self.chain_id is not None:
                tx_params["chainId"] = self.chain_id
            tx = fn.build_transaction(tx_params)
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info("%s submitted: %s", label, hex_str(tx_hash))
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except ContractLogicError as e:
            raise classify_revert(_revert_message(e), intent=intent) from e
        except TimeExhausted as e:
            raise TransientChainError(f"{label}: receipt not available: {e}") from e
        except (Web3Exception, OSError, ValueError) as e:
            raise TransientChainError(f"{label}: {type(e).__name__}: {e}") from e

        status = TxStatus(
            tx_hash=hex_str(receipt["transactionHash"]),
            status=int(receipt["status"]),
            gas_used=int(receipt["gasUsed"]),
            block_number=int(receipt["blockNumber"]),
        )
        if not status.succeeded:
            reason = self._replay_revert(fn, status, gas)
            logger.warning("%s reverted in %s: %s", label, status.tx_hash, reason)
            raise classify_revert(reason, intent=intent)
        return status

    def _replay_revert(self, fn, status: TxStatus, gas: int) -> str:
        """Recover the revert string of a mined-but-failed transaction."""
        if status.gas_used >= gas:
            return "out of gas"
        try:
            fn.call({"from": self.account.address}, block_identifier=status.block_number)
        except ContractLogicError as e:
            return _revert_message(e)
        except (Web3Exception, OSError, ValueError) as e:
            logger.warning("Could not replay %s: %s", status.tx_hash, e)
        return "transaction reverted"

    def execute(
        self, intent: str, merchant: str, amount: int, receipt_hash: str, receipt_uri: str
    ) -> TxStatus:
        fn = self._contract(intent, INTENT_ABI).functions.execute(
            Web3.to_checksum_address(merchant), int(amount), _bytes32(receipt_hash), receipt_uri
        )
        return self._send(fn, f"execute({intent})", intent=intent)

    def transfer(self, token: str, to: str, amount: int) -> TxStatus:
        fn = self._contract(token, ERC20_ABI).functions.transfer(
            Web3.to_checksum_address(to), int(amount)
        )
        return self._send(fn, f"transfer({to})")

    def approve(self, token: str, spender: str, amount: int) -> TxStatus:
        fn = self._contract(token, ERC20_ABI).functions.approve(
            Web3.to_checksum_address(spender), int(amount)
        )
        return self._send(fn, f"approve({spender})")

    def top_up(self, intent: str, amount: int) -> TxStatus:
        fn = self._contract(intent, INTENT_ABI).functions.topUp(int(amount))
        return self._send(fn, f"topUp({intent})", intent=intent)

    def revoke(self, intent: str, reason: str) -> TxStatus:
        fn = self._contract(intent, INTENT_ABI).functions.revoke(reason)
        return self._send(fn, f"revoke({intent})", intent=intent)
