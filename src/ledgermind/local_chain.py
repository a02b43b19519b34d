"""In-process stand-in for the intent factory, intents and ERC-20 tokens.

``LocalChain`` implements ``ChainReader`` and hands out ``LocalWallet``
writers. It enforces the same caps, windows, allowlist and state rules and
reverts with the same reason strings as the deployed contracts, and it emits
ABI-encoded logs that are decoded exactly like logs fetched from a node.
It is suitable for local development, the demo command and tests.

Every write mines one block. Time only moves when ``advance_time`` is called.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from .abi import (
    CONTRACT_STATE_ACTIVE,
    CONTRACT_STATE_EXPIRED,
    CONTRACT_STATE_REVOKED,
    event_abi,
)
from .chain import Block, DecodedEvent, IntentParams, Limits, TxStatus, decode_log, event_topic
from .config import normalize_address
from .errors import ChainNotFoundError, DecodeError, TransientChainError, classify_revert


GAS_USED = {
    "createIntent": 450_000,
    "execute": 95_000,
    "transfer": 52_000,
    "approve": 46_000,
    "topUp": 61_000,
    "revoke": 38_000,
    "withdrawRemainder": 48_000,
    "updateMerchant": 31_000,
}


@dataclass
class _Intent:
    address: str
    payer: str
    agent: str
    token: str
    total_cap: int
    per_tx_cap: int
    start_time: int
    end_time: int
    metadata_uri: str
    salt: str
    spent: int = 0
    revoked: bool = False
    merchants: dict[str, bool] = field(default_factory=dict)


def _address_for(*parts: Any) -> str:
    digest = Web3.keccak(text="|".join(str(p) for p in parts))
    return "0x" + digest.hex()[-40:].lower()


def _bytes32(value: str) -> bytes:
    raw = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if len(raw) != 32:
        raise ValueError(f"Expected 32-byte value, got {len(raw)} bytes")
    return raw


class LocalChain:
    """Deterministic single-node chain with the intent contracts deployed."""

    def __init__(
        self,
        start_time: Optional[int] = None,
        factory_address: Optional[str] = None,
    ):
        self._lock = threading.RLock()
        self.now = int(start_time if start_time is not None else time.time())
        self.factory_address = normalize_address(
            factory_address or _address_for("factory")
        )
        self._blocks: list[Block] = [Block(number=0, timestamp=self.now)]
        self._logs: list[dict] = []
        self._receipts: dict[str, TxStatus] = {}
        self._intents: dict[str, _Intent] = {}
        self._balances: dict[str, dict[str, int]] = {}
        self._allowances: dict[tuple[str, str, str], int] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._tx_counter = 0

    # ── Test controls ────────────────────────────────────────────────

    def advance_time(self, seconds: int) -> None:
        with self._lock:
            self.now += int(seconds)

    def mine(self, count: int = 1) -> int:
        """Mine ``count`` empty blocks and return the new head."""
        with self._lock:
            for _ in range(count):
                self._new_block()
            return self._head

    def mint(self, token: str, owner: str, amount: int) -> None:
        with self._lock:
            token, owner = normalize_address(token), normalize_address(owner)
            book = self._balances.setdefault(token, {})
            book[owner] = book.get(owner, 0) + int(amount)

    def fail_next(self, method: str, error: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise ``error``."""
        with self._lock:
            exc = error or TransientChainError(f"{method}: node unavailable")
            self._failures.setdefault(method, []).extend([exc] * times)

    def inject_log(self, address: str, topics: Sequence[bytes], data: bytes) -> dict:
        """Append an arbitrary raw log in a new block, bypassing the contracts."""
        with self._lock:
            tx_hash = self._next_tx_hash()
            block = self._new_block()
            raw = self._raw_log(address, list(topics), data, block.number, tx_hash, 0)
            self._logs.append(raw)
            return raw

    def wallet(self, address: str) -> "LocalWallet":
        return LocalWallet(self, normalize_address(address))

    def create_intent(
        self,
        payer: str,
        agent: str,
        token: str,
        total_cap: int,
        per_tx_cap: int,
        start_time: int,
        end_time: int,
        merchants: Sequence[str] = (),
        metadata_uri: str = "",
        salt: Optional[str] = None,
    ) -> str:
        """Deploy a payment intent through the factory and return its address."""
        with self._lock:
            self._maybe_fail("createIntent")
            payer, agent, token = (normalize_address(a) for a in (payer, agent, token))
            salt = salt or Web3.to_hex(Web3.keccak(text=f"salt|{self._tx_counter}"))
            address = _address_for("intent", payer, salt)
            if address in self._intents:
                self._revert("PaymentIntentFactory: intent exists")
            if end_time <= start_time:
                self._revert("PaymentIntentFactory: invalid window")
            if per_tx_cap > total_cap:
                self._revert("PaymentIntentFactory: invalid caps")
            intent = _Intent(
                address=address,
                payer=payer,
                agent=agent,
                token=token,
                total_cap=int(total_cap),
                per_tx_cap=int(per_tx_cap),
                start_time=int(start_time),
                end_time=int(end_time),
                metadata_uri=metadata_uri,
                salt=salt,
            )
            self._intents[address] = intent
            tx_hash = self._begin_tx("createIntent")
            self._emit(
                self.factory_address,
                "IntentCreated",
                {"payer": payer, "intent": address, "agent": agent, "salt": _bytes32(salt)},
                tx_hash,
            )
            for merchant in merchants:
                merchant = normalize_address(merchant)
                intent.merchants[merchant] = True
                self._emit(address, "MerchantUpdated", {"merchant": merchant, "allowed": True}, tx_hash)
            return address

    # ── ChainReader ──────────────────────────────────────────────────

    @property
    def _head(self) -> int:
        return self._blocks[-1].number

    def latest_block_number(self) -> int:
        with self._lock:
            self._maybe_fail("latest_block_number")
            return self._head

    def get_block(self, height: int) -> Block:
        with self._lock:
            self._maybe_fail("get_block")
            if height < 0 or height > self._head:
                raise ChainNotFoundError(f"Block {height} not found")
            return self._blocks[height]

    def get_event_logs(
        self, address: str, event_name: str, from_block: int, to_block: int
    ) -> list[dict]:
        with self._lock:
            self._maybe_fail("get_event_logs")
            address = normalize_address(address)
            topic = HexBytes(event_topic(event_name))
            return [
                dict(log)
                for log in self._logs
                if log["address"].lower() == address
                and log["topics"]
                and HexBytes(log["topics"][0]) == topic
                and from_block <= log["blockNumber"] <= to_block
            ]

    def decode_event(self, event_name: str, raw_log: dict) -> DecodedEvent:
        return decode_log(event_name, raw_log)

    def get_transaction_receipt(self, tx_hash: str) -> TxStatus:
        with self._lock:
            self._maybe_fail("get_transaction_receipt")
            receipt = self._receipts.get(tx_hash.lower())
            if receipt is None:
                raise ChainNotFoundError(f"Transaction {tx_hash} not found")
            return receipt

    def read_intent_params(self, intent: str) -> IntentParams:
        with self._lock:
            self._maybe_fail("read_intent_params")
            i = self._intent(intent)
            return IntentParams(
                address=i.address,
                payer=i.payer,
                agent=i.agent,
                token=i.token,
                total_cap=i.total_cap,
                per_tx_cap=i.per_tx_cap,
                start_time=i.start_time,
                end_time=i.end_time,
                metadata_uri=i.metadata_uri,
            )

    def read_limits(self, intent: str) -> Limits:
        with self._lock:
            self._maybe_fail("read_limits")
            i = self._intent(intent)
            return Limits(i.total_cap, i.per_tx_cap, i.spent, i.start_time, i.end_time)

    def read_state(self, intent: str) -> int:
        with self._lock:
            self._maybe_fail("read_state")
            i = self._intent(intent)
            if i.revoked:
                return CONTRACT_STATE_REVOKED
            if self.now >= i.end_time:
                return CONTRACT_STATE_EXPIRED
            return CONTRACT_STATE_ACTIVE

    def get_balance(self, intent: str) -> int:
        with self._lock:
            self._maybe_fail("get_balance")
            i = self._intent(intent)
            return self._balance_of(i.token, i.address)

    def is_merchant_allowed(self, intent: str, merchant: str) -> bool:
        with self._lock:
            self._maybe_fail("is_merchant_allowed")
            return self._merchant_allowed(self._intent(intent), normalize_address(merchant))

    def token_balance(self, token: str, owner: str) -> int:
        with self._lock:
            self._maybe_fail("token_balance")
            return self._balance_of(normalize_address(token), normalize_address(owner))

    def token_allowance(self, token: str, owner: str, spender: str) -> int:
        with self._lock:
            self._maybe_fail("token_allowance")
            key = (normalize_address(token), normalize_address(owner), normalize_address(spender))
            return self._allowances.get(key, 0)

    def get_payer_intents(self, payer: str) -> list[str]:
        payer = normalize_address(payer)
        with self._lock:
            return [i.address for i in self._intents.values() if i.payer == payer]

    def get_agent_intents(self, agent: str) -> list[str]:
        agent = normalize_address(agent)
        with self._lock:
            return [i.address for i in self._intents.values() if i.agent == agent]

    # ── Contract logic (called through LocalWallet) ──────────────────

    def _execute(
        self, sender: str, intent: str, merchant: str, amount: int, receipt_hash: str, receipt_uri: str
    ) -> TxStatus:
        with self._lock:
            self._maybe_fail("execute")
            i = self._intent(intent)
            merchant = normalize_address(merchant)
            amount = int(amount)
            if sender != i.agent:
                self._revert("PaymentIntent: not agent", i.address)
            if i.revoked:
                self._revert("PaymentIntent: not active", i.address)
            if self.now < i.start_time:
                self._revert("PaymentIntent: too early", i.address)
            if self.now >= i.end_time:
                self._revert("PaymentIntent: too late", i.address)
            if not self._merchant_allowed(i, merchant):
                self._revert("PaymentIntent: merchant not allowed", i.address)
            if amount > i.per_tx_cap:
                self._revert("PaymentIntent: exceeds per tx cap", i.address)
            if i.spent + amount > i.total_cap:
                self._revert("PaymentIntent: exceeds total cap", i.address)
            if self._balance_of(i.token, i.address) < amount:
                self._revert("PaymentIntent: insufficient balance", i.address)
            receipt_hash_bytes = _bytes32(receipt_hash)

            self._move(i.token, i.address, merchant, amount)
            i.spent += amount
            tx_hash = self._begin_tx("execute")
            self._emit(
                i.address,
                "Executed",
                {
                    "agent": sender,
                    "merchant": merchant,
                    "token": i.token,
                    "amount": amount,
                    "receiptHash": receipt_hash_bytes,
                    "receiptURI": receipt_uri,
                },
                tx_hash,
            )
            return self._receipts[tx_hash]

    def _transfer(self, sender: str, token: str, to: str, amount: int) -> TxStatus:
        with self._lock:
            self._maybe_fail("transfer")
            token, to = normalize_address(token), normalize_address(to)
            if self._balance_of(token, sender) < amount:
                self._revert("ERC20: transfer amount exceeds balance")
            self._move(token, sender, to, int(amount))
            tx_hash = self._begin_tx("transfer")
            return self._receipts[tx_hash]

    def _approve(self, sender: str, token: str, spender: str, amount: int) -> TxStatus:
        with self._lock:
            self._maybe_fail("approve")
            key = (normalize_address(token), sender, normalize_address(spender))
            self._allowances[key] = int(amount)
            tx_hash = self._begin_tx("approve")
            return self._receipts[tx_hash]

    def _top_up(self, sender: str, intent: str, amount: int) -> TxStatus:
        with self._lock:
            self._maybe_fail("top_up")
            i = self._intent(intent)
            if sender != i.payer:
                self._revert("PaymentIntent: not payer", i.address)
            if i.revoked:
                self._revert("PaymentIntent: not active", i.address)
            if self._balance_of(i.token, sender) < amount:
                self._revert("ERC20: transfer amount exceeds balance", i.address)
            self._move(i.token, sender, i.address, int(amount))
            tx_hash = self._begin_tx("topUp")
            self._emit(i.address, "ToppedUp", {"amount": int(amount)}, tx_hash)
            return self._receipts[tx_hash]

    def _revoke(self, sender: str, intent: str, reason: str) -> TxStatus:
        with self._lock:
            self._maybe_fail("revoke")
            i = self._intent(intent)
            if sender != i.payer:
                self._revert("PaymentIntent: not payer", i.address)
            if i.revoked:
                self._revert("PaymentIntent: not active", i.address)
            i.revoked = True
            tx_hash = self._begin_tx("revoke")
            self._emit(i.address, "Revoked", {"by": sender, "reason": reason}, tx_hash)
            return self._receipts[tx_hash]

    def _withdraw_remainder(self, sender: str, intent: str, to: str) -> TxStatus:
        with self._lock:
            self._maybe_fail("withdraw_remainder")
            i = self._intent(intent)
            to = normalize_address(to)
            if sender != i.payer:
                self._revert("PaymentIntent: not payer", i.address)
            if not i.revoked and self.now < i.end_time:
                self._revert("PaymentIntent: still active", i.address)
            amount = self._balance_of(i.token, i.address)
            self._move(i.token, i.address, to, amount)
            tx_hash = self._begin_tx("withdrawRemainder")
            self._emit(i.address, "Withdrawn", {"to": to, "amount": amount}, tx_hash)
            return self._receipts[tx_hash]

    def _update_merchant(self, sender: str, intent: str, merchant: str, allowed: bool) -> TxStatus:
        with self._lock:
            self._maybe_fail("update_merchant")
            i = self._intent(intent)
            merchant = normalize_address(merchant)
            if sender != i.payer:
                self._revert("PaymentIntent: not payer", i.address)
            i.merchants[merchant] = bool(allowed)
            tx_hash = self._begin_tx("updateMerchant")
            self._emit(i.address, "MerchantUpdated", {"merchant": merchant, "allowed": bool(allowed)}, tx_hash)
            return self._receipts[tx_hash]

    # ── Internals ────────────────────────────────────────────────────

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _revert(self, reason: str, intent: Optional[str] = None):
        raise classify_revert(f"execution reverted: {reason}", intent=intent)

    def _intent(self, address: str) -> _Intent:
        try:
            return self._intents[normalize_address(address)]
        except KeyError:
            raise DecodeError(f"No intent contract at {address}") from None

    @staticmethod
    def _merchant_allowed(intent: _Intent, merchant: str) -> bool:
        if not intent.merchants:
            return True
        return intent.merchants.get(merchant, False)

    def _balance_of(self, token: str, owner: str) -> int:
        return self._balances.get(token, {}).get(owner, 0)

    def _move(self, token: str, src: str, dst: str, amount: int) -> None:
        book = self._balances.setdefault(token, {})
        book[src] = book.get(src, 0) - amount
        book[dst] = book.get(dst, 0) + amount

    def _new_block(self) -> Block:
        block = Block(number=self._head + 1, timestamp=self.now)
        self._blocks.append(block)
        return block

    def _next_tx_hash(self) -> str:
        self._tx_counter += 1
        return Web3.to_hex(Web3.keccak(text=f"tx|{self._tx_counter}"))

    def _begin_tx(self, method: str) -> str:
        tx_hash = self._next_tx_hash()
        block = self._new_block()
        block.transactions.append(tx_hash)
        self._receipts[tx_hash] = TxStatus(
            tx_hash=tx_hash, status=1, gas_used=GAS_USED[method], block_number=block.number
        )
        return tx_hash

    def _raw_log(
        self, address: str, topics: list, data: bytes, block_number: int, tx_hash: str, log_index: int
    ) -> dict:
        return {
            "address": Web3.to_checksum_address(address),
            "topics": [HexBytes(t) for t in topics],
            "data": HexBytes(data),
            "blockNumber": block_number,
            "blockHash": HexBytes(Web3.keccak(text=f"block|{block_number}")),
            "transactionHash": HexBytes(tx_hash),
            "transactionIndex": 0,
            "logIndex": log_index,
            "removed": False,
        }

    def _emit(self, address: str, event_name: str, args: dict, tx_hash: str) -> None:
        abi = event_abi(event_name)
        topics = [HexBytes(event_topic(event_name))]
        data_types, data_values = [], []
        for inp in abi["inputs"]:
            if inp["indexed"]:
                topics.append(encode([inp["type"]], [args[inp["name"]]]))
            else:
                data_types.append(inp["type"])
                data_values.append(args[inp["name"]])
        block_number = self._head
        log_index = sum(1 for log in self._logs if log["blockNumber"] == block_number)
        self._logs.append(
            self._raw_log(address, topics, encode(data_types, data_values), block_number, tx_hash, log_index)
        )


class LocalWallet:
    """ContractWriter bound to one account on a LocalChain."""

    def __init__(self, chain: LocalChain, address: str):
        self.chain = chain
        self.address = address

    def execute(
        self, intent: str, merchant: str, amount: int, receipt_hash: str, receipt_uri: str
    ) -> TxStatus:
        return self.chain._execute(self.address, intent, merchant, amount, receipt_hash, receipt_uri)

    def transfer(self, token: str, to: str, amount: int) -> TxStatus:
        return self.chain._transfer(self.address, token, to, amount)

    def approve(self, token: str, spender: str, amount: int) -> TxStatus:
        return self.chain._approve(self.address, token, spender, amount)

    def top_up(self, intent: str, amount: int) -> TxStatus:
        return self.chain._top_up(self.address, intent, amount)

    def revoke(self, intent: str, reason: str) -> TxStatus:
        return self.chain._revoke(self.address, intent, reason)

    def withdraw_remainder(self, intent: str, to: Optional[str] = None) -> TxStatus:
        return self.chain._withdraw_remainder(self.address, intent, to or self.address)

    def update_merchant(self, intent: str, merchant: str, allowed: bool) -> TxStatus:
        return self.chain._update_merchant(self.address, intent, merchant, allowed)
