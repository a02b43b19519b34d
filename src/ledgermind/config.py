"""
Runtime configuration.

Everything is read from ``LEDGERMIND_*`` environment variables with local
defaults under ``~/.ledgermind`` (overridable with ``LEDGERMIND_HOME``).
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .units import DEFAULT_DECIMALS


_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

DEFAULT_RPC_URL = "https://evm-rpc-testnet.sei-apis.com"
DEFAULT_CHAIN_ID = 1328
DEFAULT_IPFS_GATEWAY_URL = "https://ipfs.io/ipfs"
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_BLOCK_WINDOW = 1000
DEFAULT_RPC_TIMEOUT = 15.0
DEFAULT_AUTO_FUND_BUFFER = 10


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def default_home() -> Path:
    override = os.getenv("LEDGERMIND_HOME")
    return Path(override) if override else Path.home() / ".ledgermind"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _env_address(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name) or default
    if not raw:
        return None
    try:
        return normalize_address(raw)
    except ValueError as e:
        raise ConfigError(f"{name}: {e}") from e


@dataclass
class LedgerConfig:
    """Settings shared by the indexer, query API and orchestrator."""

    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = DEFAULT_CHAIN_ID
    factory_address: Optional[str] = None
    token_decimals: int = DEFAULT_DECIMALS
    home: Path = field(default_factory=default_home)
    db_path: Optional[Path] = None
    audit_path: Optional[Path] = None
    audit_key_path: Optional[Path] = None
    blob_dir: Optional[Path] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    block_window: int = DEFAULT_BLOCK_WINDOW
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT
    auto_fund_buffer: int = DEFAULT_AUTO_FUND_BUFFER
    ipfs_api_url: Optional[str] = None
    ipfs_gateway_url: str = DEFAULT_IPFS_GATEWAY_URL
    ipfs_api_key: Optional[str] = None
    ipfs_api_secret: Optional[str] = None

    def __post_init__(self):
        self.home = Path(self.home)
        if self.db_path is None:
            self.db_path = self.home / "ledger.sqlite3"
        if self.audit_path is None:
            self.audit_path = self.home / "audit.jsonl"
        if self.audit_key_path is None:
            self.audit_key_path = self.home / "secrets" / "audit_hmac.key"
        if self.blob_dir is None:
            self.blob_dir = self.home / "blobs"
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if self.block_window < 0:
            raise ConfigError("block_window must be non-negative")
        if self.auto_fund_buffer < 0:
            raise ConfigError("auto_fund_buffer must be non-negative")

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        home = default_home()
        db_path = os.getenv("LEDGERMIND_DB_PATH")
        audit_path = os.getenv("LEDGERMIND_AUDIT_PATH")
        blob_dir = os.getenv("LEDGERMIND_BLOB_DIR")
        return cls(
            rpc_url=os.getenv("LEDGERMIND_RPC_URL", DEFAULT_RPC_URL),
            chain_id=_env_int("LEDGERMIND_CHAIN_ID", DEFAULT_CHAIN_ID),
            factory_address=_env_address("LEDGERMIND_FACTORY_ADDRESS"),
            token_decimals=_env_int("LEDGERMIND_TOKEN_DECIMALS", DEFAULT_DECIMALS),
            home=home,
            db_path=Path(db_path) if db_path else None,
            audit_path=Path(audit_path) if audit_path else None,
            blob_dir=Path(blob_dir) if blob_dir else None,
            poll_interval=_env_float("LEDGERMIND_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            block_window=_env_int("LEDGERMIND_BLOCK_WINDOW", DEFAULT_BLOCK_WINDOW),
            rpc_timeout=_env_float("LEDGERMIND_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT),
            auto_fund_buffer=_env_int("LEDGERMIND_AUTO_FUND_BUFFER", DEFAULT_AUTO_FUND_BUFFER),
            ipfs_api_url=os.getenv("LEDGERMIND_IPFS_API_URL") or None,
            ipfs_gateway_url=os.getenv("LEDGERMIND_IPFS_GATEWAY_URL", DEFAULT_IPFS_GATEWAY_URL),
            ipfs_api_key=os.getenv("LEDGERMIND_IPFS_API_KEY") or None,
            ipfs_api_secret=os.getenv("LEDGERMIND_IPFS_API_SECRET") or None,
        )

    def require_factory(self) -> str:
        if not self.factory_address:
            raise ConfigError("LEDGERMIND_FACTORY_ADDRESS is not set")
        return self.factory_address
