"""
Read-only chain access.

``ChainReader`` is the interface the indexer, query layer and orchestrator
depend on. ``Web3ChainReader`` implements it over JSON-RPC; ``LocalChain``
(see local_chain.py) implements it in-process for development and tests.

RPC transport failures surface as ``TransientChainError``; pruned or
not-yet-available blocks and transactions as ``ChainNotFoundError``. The
reader never retries on its own.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from web3 import Web3
from web3._utils.events import get_event_data
from web3.exceptions import (
    BadFunctionCallOutput,
    BlockNotFound,
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
)

from .abi import ERC20_ABI, FACTORY_ABI, INTENT_ABI, event_abi, event_signature
from .config import normalize_address
from .errors import ChainNotFoundError, DecodeError, TransientChainError


logger = logging.getLogger(__name__)

_CODEC = Web3().codec


@dataclass
class Block:
    number: int
    timestamp: int
    transactions: list[str] = field(default_factory=list)


@dataclass
class TxStatus:
    tx_hash: str
    status: int
    gas_used: int
    block_number: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class Limits:
    total_cap: int
    per_tx_cap: int
    spent: int
    start_time: int
    end_time: int


@dataclass
class IntentParams:
    """Immutable parameters of a deployed payment intent."""

    address: str
    payer: str
    agent: str
    token: str
    total_cap: int
    per_tx_cap: int
    start_time: int
    end_time: int
    metadata_uri: str = ""


@dataclass
class DecodedEvent:
    """A decoded contract log with its on-chain position."""

    name: str
    address: str
    args: dict[str, Any]
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class ChainReader(Protocol):
    def latest_block_number(self) -> int: ...

    def get_block(self, height: int) -> Block: ...

    def get_event_logs(
        self, address: str, event_name: str, from_block: int, to_block: int
    ) -> list[dict]: ...

    def decode_event(self, event_name: str, raw_log: dict) -> DecodedEvent: ...

    def get_transaction_receipt(self, tx_hash: str) -> TxStatus: ...

    def read_intent_params(self, intent: str) -> IntentParams: ...

    def read_limits(self, intent: str) -> Limits: ...

    def read_state(self, intent: str) -> int: ...

    def get_balance(self, intent: str) -> int: ...

    def is_merchant_allowed(self, intent: str, merchant: str) -> bool: ...

    def token_balance(self, token: str, owner: str) -> int: ...

    def token_allowance(self, token: str, owner: str, spender: str) -> int: ...

    def get_payer_intents(self, payer: str) -> list[str]: ...

    def get_agent_intents(self, agent: str) -> list[str]: ...


def event_topic(event_name: str) -> str:
    return Web3.to_hex(Web3.keccak(text=event_signature(event_name)))


def hex_str(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value)


def _normalize_arg(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return hex_str(bytes(value))
    if isinstance(value, str) and Web3.is_address(value) and value.startswith("0x"):
        return value.lower()
    return value


def decode_log(event_name: str, raw_log: dict) -> DecodedEvent:
    """Decode ``raw_log`` against the named event ABI.

    Shared by every ChainReader so that locally produced logs go through the
    same ABI decoding as logs fetched from a node.
    """
    try:
        data = get_event_data(_CODEC, event_abi(event_name), raw_log)
        return DecodedEvent(
            name=data["event"],
            address=normalize_address(str(data["address"])),
            args={k: _normalize_arg(v) for k, v in dict(data["args"]).items()},
            tx_hash=hex_str(data["transactionHash"]),
            block_number=int(data["blockNumber"]),
            log_index=int(data["logIndex"]),
        )
    except Exception as e:
        raise DecodeError(f"Cannot decode {event_name} log: {type(e).__name__}: {e}") from e


@contextmanager
def _rpc(what: str):
    try:
        yield
    except (BlockNotFound, TransactionNotFound) as e:
        raise ChainNotFoundError(f"{what}: {e}") from e
    except (ContractLogicError, BadFunctionCallOutput) as e:
        raise DecodeError(f"{what}: unexpected contract response: {e}") from e
    except (Web3Exception, OSError, ValueError) as e:
        raise TransientChainError(f"{what}: {type(e).__name__}: {e}") from e


class Web3ChainReader:
    """ChainReader over a JSON-RPC node."""

    def __init__(
        self,
        rpc_url: str,
        factory_address: Optional[str] = None,
        timeout: float = 15.0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.factory_address = normalize_address(factory_address) if factory_address else None

    def _contract(self, address: str, abi: list):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def _factory(self):
        if not self.factory_address:
            raise ValueError("Factory address is not configured")
        return self._contract(self.factory_address, FACTORY_ABI)

    # ── Blocks and logs ──────────────────────────────────────────────

    def latest_block_number(self) -> int:
        with _rpc("eth_blockNumber"):
            return int(self.w3.eth.block_number)

    def get_block(self, height: int) -> Block:
        with _rpc(f"eth_getBlockByNumber({height})"):
            block = self.w3.eth.get_block(height)
        if block is None:
            raise ChainNotFoundError(f"Block {height} not found")
        return Block(
            number=int(block["number"]),
            timestamp=int(block["timestamp"]),
            transactions=[hex_str(tx) for tx in block.get("transactions", [])],
        )

    def get_event_logs(
        self, address: str, event_name: str, from_block: int, to_block: int
    ) -> list[dict]:
        with _rpc(f"eth_getLogs({event_name} {from_block}-{to_block})"):
            logs = self.w3.eth.get_logs(
                {
                    "address": Web3.to_checksum_address(address),
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "topics": [event_topic(event_name)],
                }
            )
        return [dict(log) for log in logs]

    def decode_event(self, event_name: str, raw_log: dict) -> DecodedEvent:
        return decode_log(event_name, raw_log)

    def get_transaction_receipt(self, tx_hash: str) -> TxStatus:
        with _rpc(f"eth_getTransactionReceipt({tx_hash})"):
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        return TxStatus(
            tx_hash=hex_str(receipt["transactionHash"]),
            status=int(receipt["status"]),
            gas_used=int(receipt["gasUsed"]),
            block_number=int(receipt["blockNumber"]),
        )

    # ── Contract reads ───────────────────────────────────────────────

    def read_limits(self, intent: str) -> Limits:
        with _rpc(f"limits({intent})"):
            total_cap, per_tx_cap, spent, start, end = (
                self._contract(intent, INTENT_ABI).functions.limits().call()
            )
        return Limits(int(total_cap), int(per_tx_cap), int(spent), int(start), int(end))

    def read_intent_params(self, intent: str) -> IntentParams:
        contract = self._contract(intent, INTENT_ABI)
        with _rpc(f"intent params({intent})"):
            payer = contract.functions.payer().call()
            agent = contract.functions.agent().call()
            token = contract.functions.token().call()
        limits = self.read_limits(intent)
        try:
            metadata_uri = contract.functions.metadataURI().call()
        except (ContractLogicError, BadFunctionCallOutput):
            # Older intent deployments have no metadataURI getter
            metadata_uri = ""
        except (Web3Exception, OSError) as e:
            raise TransientChainError(f"metadataURI({intent}): {e}") from e
        return IntentParams(
            address=normalize_address(intent),
            payer=normalize_address(payer),
            agent=normalize_address(agent),
            token=normalize_address(token),
            total_cap=limits.total_cap,
            per_tx_cap=limits.per_tx_cap,
            start_time=limits.start_time,
            end_time=limits.end_time,
            metadata_uri=metadata_uri or "",
        )

    def read_state(self, intent: str) -> int:
        with _rpc(f"state({intent})"):
            return int(self._contract(intent, INTENT_ABI).functions.state().call())

    def get_balance(self, intent: str) -> int:
        with _rpc(f"getBalance({intent})"):
            return int(self._contract(intent, INTENT_ABI).functions.getBalance().call())

    def is_merchant_allowed(self, intent: str, merchant: str) -> bool:
        with _rpc(f"isMerchantAllowed({intent})"):
            return bool(
                self._contract(intent, INTENT_ABI)
                .functions.isMerchantAllowed(Web3.to_checksum_address(merchant))
                .call()
            )

    def token_balance(self, token: str, owner: str) -> int:
        with _rpc(f"balanceOf({owner})"):
            return int(
                self._contract(token, ERC20_ABI)
                .functions.balanceOf(Web3.to_checksum_address(owner))
                .call()
            )

    def token_allowance(self, token: str, owner: str, spender: str) -> int:
        with _rpc(f"allowance({owner}, {spender})"):
            return int(
                self._contract(token, ERC20_ABI)
                .functions.allowance(
                    Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)
                )
                .call()
            )

    def get_payer_intents(self, payer: str) -> list[str]:
        with _rpc(f"getPayerIntents({payer})"):
            result = self._factory().functions.getPayerIntents(
                Web3.to_checksum_address(payer)
            ).call()
        return [normalize_address(a) for a in result]

    def get_agent_intents(self, agent: str) -> list[str]:
        with _rpc(f"getAgentIntents({agent})"):
            result = self._factory().functions.getAgentIntents(
                Web3.to_checksum_address(agent)
            ).call()
        return [normalize_address(a) for a in result]
